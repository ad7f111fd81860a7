# app/services/output_format.py - Renders the final article from accumulated step outputs

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any

import markdown

from app.providers.llm import extract_json_block

SUPPORTED_FORMATS = ("markdown", "html", "json", "drupal_json")
SECTION_SEPARATOR = "\n\n---\n\n"
DEFAULT_AUTHOR = "AI uredništvo"

_HEADING_RE = re.compile(r"^#{1,3}\s+.+", re.MULTILINE)
_TITLE_RE = re.compile(r"^#\s+(.+)", re.MULTILINE)
_LEAD_RE = re.compile(r"^#\s+.+\n\n(.+)", re.MULTILINE)
_MARKDOWN_EXTENSIONS = ["tables", "fenced_code"]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def render_html(text: str) -> str:
    return markdown.markdown(text, extensions=_MARKDOWN_EXTENSIONS)


def _pick_article_text(steps: list[dict[str, Any]], fallback: str) -> str:
    """Prefer the last plain-text output with markdown headings, else the first long one."""
    article = ""
    for step in steps:
        text = step.get("text") or ""
        if step.get("json") is not None or len(text) <= 50:
            continue
        if _HEADING_RE.search(text):
            article = text
        elif not article:
            article = text
    return article or fallback


def _collect_signals(steps: list[dict[str, Any]]) -> tuple[dict[str, Any], int | float | None, list[dict[str, str]]]:
    seo: dict[str, Any] = {}
    confidence: int | float | None = None
    sources: list[dict[str, str]] = []
    for step in steps:
        data = step.get("json")
        if not isinstance(data, dict):
            continue
        if data.get("meta_title") or data.get("titles"):
            seo = data
        score = data.get("confidence_score")
        if isinstance(score, (int, float)) and not isinstance(score, bool):
            confidence = score
        if isinstance(data.get("sources"), list):
            sources = [
                {"title": str(item.get("title") or item.get("url") or ""), "url": str(item.get("url") or "")}
                for item in data["sources"]
                if isinstance(item, dict)
            ]
    return seo, confidence, sources


def _featured_image(steps: list[dict[str, Any]]) -> dict[str, Any] | None:
    image: dict[str, Any] | None = None
    for step in steps:
        output = step.get("output") or {}
        url = output.get("image_url")
        if isinstance(url, str) and url:
            images = output.get("images") or [{}]
            first = images[0] if isinstance(images[0], dict) else {}
            image = {"url": url, "width": first.get("width"), "height": first.get("height")}
    return image


def build_article_payload(snapshot: dict[str, Any]) -> dict[str, Any]:
    steps: list[dict[str, Any]] = snapshot.get("steps") or []
    previous_output = snapshot.get("previous_output") or ""
    article = _pick_article_text(steps, previous_output)
    seo, confidence, sources = _collect_signals(steps)

    if not seo:
        legacy = extract_json_block(previous_output)
        if legacy and "titles" in legacy:
            seo = legacy

    title_match = _TITLE_RE.search(article)
    titles = seo.get("titles") if isinstance(seo.get("titles"), list) else []
    first_title = titles[0].get("text") if titles and isinstance(titles[0], dict) else None
    raw_title = (title_match.group(1) if title_match else None) or seo.get("meta_title") or first_title or "Untitled"
    title = raw_title.replace("*", "").strip()

    lead_match = _LEAD_RE.search(article)
    lead = (lead_match.group(1) if lead_match else None) or seo.get("meta_description") or ""

    body = article
    if title_match:
        body = re.sub(r"^#\s+.+\n*", "", body, count=1, flags=re.MULTILINE)
    if lead_match:
        body = body.replace(lead_match.group(1), "", 1)
    body = body.strip()

    return {
        "title": title,
        "subtitle": lead,
        "body": render_html(body) if body else f"<p>{previous_output}</p>",
        "summary": lead,
        "meta": {
            "meta_title": seo.get("meta_title") or title,
            "meta_description": seo.get("meta_description") or lead,
            "keywords": seo.get("keywords") or [],
            "slug": seo.get("slug") or "",
            "social_title": seo.get("social_title") or title,
            "social_description": seo.get("social_description") or lead,
            "category_suggestion": seo.get("category_suggestion") or "",
            "title_variants": titles,
            "tags": seo.get("tags") or [],
        },
        "sources": sources,
        "featured_image": _featured_image(steps),
        "author": DEFAULT_AUTHOR,
        "status": "draft",
        "confidence_score": confidence,
        "format": "drupal_article",
        "generated_at": _utc_now_iso(),
    }


def render_output(formats: list[str], snapshot: dict[str, Any]) -> dict[str, Any]:
    """Render the requested formats. ``text`` joins the sections in request order.

    A lone ``drupal_json`` format renders the bare JSON payload so downstream
    consumers can parse the step text directly.
    """
    unknown = [fmt for fmt in formats if fmt not in SUPPORTED_FORMATS]
    if unknown:
        raise ValueError(f"Unsupported output formats: {unknown}")

    text = snapshot.get("previous_output") or ""
    sections: list[str] = []
    rendered: dict[str, Any] = {}
    for fmt in formats:
        if fmt == "markdown":
            rendered[fmt] = text
            sections.append(f"## Markdown\n\n{text}")
        elif fmt == "html":
            rendered[fmt] = render_html(text)
            sections.append(f"## HTML\n\n{rendered[fmt]}")
        elif fmt == "json":
            rendered[fmt] = {"content": text, "generated_at": _utc_now_iso()}
            sections.append(f"## JSON\n\n```json\n{json.dumps(rendered[fmt], ensure_ascii=False, indent=2)}\n```")
        else:
            rendered[fmt] = build_article_payload(snapshot)
            sections.append(json.dumps(rendered[fmt], ensure_ascii=False, indent=2))

    if formats == ["drupal_json"]:
        output_text = sections[0]
    else:
        output_text = SECTION_SEPARATOR.join(sections)
    return {"text": output_text, "formats": rendered}
