from __future__ import annotations

import base64
import json
from typing import Any

import pytest

from app.models.execution import ExecutionStatus, StepResultStatus
from app.models.recipe import StepType
from app.providers import drupal
from app.providers.common import ProviderError
from app.providers.drupal import SKIPPED_NO_ARTICLE, SKIPPED_NOT_CONFIGURED, DrupalPublishAdapter, sanitize_html
from app.services.step_context import StepContext
from app.services.step_inputs import find_drupal_article

ARTICLE = {
    "format": "drupal_article",
    "title": "Nova kolesarska steza",
    "subtitle": "Občina je odprla novo stezo.",
    "summary": "Občina je odprla novo stezo.",
    "body": '<p onclick="track()">Steza je dolga <a href="javascript:alert(1)" target="_blank">5 km</a>.</p>'
    "<script>steal()</script><div><em>Odprta vse leto.</em></div>",
}


class _FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None):
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body) if body is not None else ""

    def json(self) -> Any:
        if self._body is None:
            raise ValueError("response is not JSON")
        return self._body


class _FakeAsyncClient:
    def __init__(self, responses: list[Any]):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def __call__(self, *args, **kwargs):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):  # noqa: ANN001
        return None

    async def post(self, url: str, **kwargs: Any):
        self.calls.append({"url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def drupal_http(monkeypatch: pytest.MonkeyPatch):
    async def _public_address(_hostname: str) -> list[str]:
        return ["93.184.216.34"]

    monkeypatch.setattr(drupal, "_resolve_addresses", _public_address)
    monkeypatch.setattr(drupal, "RETRY_DELAYS_SECONDS", (0.0, 0.0))

    def _install(responses: list[Any]) -> _FakeAsyncClient:
        client = _FakeAsyncClient(responses)
        monkeypatch.setattr(drupal.httpx, "AsyncClient", client)
        return client

    return _install


def _jsonapi_node(nid: int = 42) -> dict[str, Any]:
    return {
        "data": {
            "id": "node-uuid-1",
            "attributes": {"drupal_internal__nid": nid},
            "links": {"self": {"href": "https://cms.example.com/jsonapi/node/article/node-uuid-1"}},
        }
    }


def test_sanitize_html_strips_scripts_handlers_and_unknown_tags():
    cleaned = sanitize_html(ARTICLE["body"])

    assert cleaned == '<p>Steza je dolga <a href="">5 km</a>.</p><em>Odprta vse leto.</em>'


def test_sanitize_html_keeps_allowed_attributes():
    cleaned = sanitize_html('<img src="slika.jpg" alt="Steza" onerror="x()" style="width:1px">')

    assert 'src="slika.jpg"' in cleaned
    assert 'alt="Steza"' in cleaned
    assert "onerror" not in cleaned
    assert "style" not in cleaned


@pytest.mark.asyncio
async def test_publish_jsonapi_sends_sanitized_draft(drupal_http):
    client = drupal_http([_FakeResponse(201, _jsonapi_node())])
    adapter = DrupalPublishAdapter(base_url="https://cms.example.com/", token="tok-1")

    result = await adapter.invoke({"article": ARTICLE, "mode": "draft"}, timeout_seconds=10)

    call = client.calls[0]
    assert call["url"] == "https://cms.example.com/jsonapi/node/article"
    assert call["headers"]["Authorization"] == "Bearer tok-1"
    assert call["headers"]["Content-Type"] == "application/vnd.api+json"
    attributes = call["json"]["data"]["attributes"]
    assert call["json"]["data"]["type"] == "node--article"
    assert attributes["title"] == "Nova kolesarska steza"
    assert attributes["status"] is False
    assert attributes["body"]["format"] == "full_html"
    assert attributes["body"]["summary"] == "Občina je odprla novo stezo."
    assert "<script" not in attributes["body"]["value"]
    assert "onclick" not in attributes["body"]["value"]
    assert result.output["published"] is True
    assert result.output["node_id"] == "42"
    assert result.output["drupal_status"] == "draft"
    assert json.loads(result.output["text"])["node_uuid"] == "node-uuid-1"
    assert result.provider_response_id == "node-uuid-1"
    assert result.usage == {}


@pytest.mark.asyncio
async def test_publish_custom_rest_with_basic_auth(drupal_http):
    client = drupal_http([_FakeResponse(200, {"nid": 7, "uuid": "u-7", "url": "https://cms.example.com/node/7", "status": "published"})])
    adapter = DrupalPublishAdapter(
        base_url="https://cms.example.com",
        adapter_type="custom_rest",
        auth_type="basic",
        username="urednik",
        password="geslo",
    )

    result = await adapter.invoke({"article": ARTICLE, "mode": "publish"}, timeout_seconds=10)

    call = client.calls[0]
    expected_auth = base64.b64encode(b"urednik:geslo").decode("ascii")
    assert call["url"] == "https://cms.example.com/morana/publish"
    assert call["headers"]["Authorization"] == f"Basic {expected_auth}"
    assert call["json"]["status"] == "publish"
    assert call["json"]["body_html"].startswith("<p>Steza je dolga")
    assert result.output["url"] == "https://cms.example.com/node/7"
    assert result.output["drupal_status"] == "published"


@pytest.mark.asyncio
async def test_publish_retries_server_errors(drupal_http):
    client = drupal_http([_FakeResponse(503, {"message": "busy"}), _FakeResponse(201, _jsonapi_node(9))])
    adapter = DrupalPublishAdapter(base_url="https://cms.example.com", token="tok-1")

    result = await adapter.invoke({"article": ARTICLE}, timeout_seconds=10)

    assert len(client.calls) == 2
    assert result.output["node_id"] == "9"


@pytest.mark.asyncio
async def test_publish_client_error_is_not_retried(drupal_http):
    client = drupal_http([_FakeResponse(422, {"errors": [], "message": "Invalid body format"})])
    adapter = DrupalPublishAdapter(base_url="https://cms.example.com", token="tok-1")

    with pytest.raises(ProviderError, match="drupal error 422: Invalid body format"):
        await adapter.invoke({"article": ARTICLE}, timeout_seconds=10)
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_publish_skips_without_configuration_or_article(drupal_http):
    client = drupal_http([])

    unconfigured = await DrupalPublishAdapter(base_url=None).invoke({"article": ARTICLE}, timeout_seconds=10)
    no_article = await DrupalPublishAdapter(base_url="https://cms.example.com", token="tok-1").invoke(
        {"article": None}, timeout_seconds=10
    )

    assert unconfigured.output == {"text": SKIPPED_NOT_CONFIGURED, "published": False}
    assert no_article.output == {"text": SKIPPED_NO_ARTICLE, "published": False}
    assert client.calls == []


@pytest.mark.asyncio
async def test_publish_refuses_internal_hosts(drupal_http):
    client = drupal_http([])
    adapter = DrupalPublishAdapter(base_url="http://127.0.0.1:8080", token="tok-1")

    with pytest.raises(ProviderError, match="private/internal"):
        await adapter.invoke({"article": ARTICLE}, timeout_seconds=10)
    assert client.calls == []


def test_find_drupal_article_reads_bare_and_multi_format_outputs():
    context = StepContext(input_data={"text": "A"})
    context.record(0, StepResultStatus.DONE, {"text": "Osnutek"})
    context.record(1, StepResultStatus.DONE, {"text": json.dumps(ARTICLE)})
    assert find_drupal_article(context, 2)["title"] == ARTICLE["title"]

    multi = StepContext(input_data={"text": "A"})
    multi.record(0, StepResultStatus.DONE, {"text": "## Markdown\n\n...", "formats": {"drupal_json": ARTICLE}})
    assert find_drupal_article(multi, 1) == ARTICLE
    assert find_drupal_article(multi, 0) is None


@pytest.mark.asyncio
async def test_recipe_publishes_formatted_article(store, make_recipe, make_engine, adapters, drupal_http):
    client = drupal_http([_FakeResponse(201, _jsonapi_node(101))])
    adapters[StepType.DRUPAL_PUBLISH] = DrupalPublishAdapter(base_url="https://cms.example.com", token="tok-1")
    recipe = make_recipe(
        [
            {"step_index": 0, "name": "Članek", "type": "llm", "config": {}},
            {"step_index": 1, "name": "Izvoz", "type": "output_format", "config": {"formats": ["drupal_json"]}},
            {"step_index": 2, "name": "Objava", "type": "drupal_publish", "config": {"mode": "publish"}},
        ]
    )
    engine = make_engine(adapters)
    text = "Občina je danes odprla novo kolesarsko stezo ob reki. <script>steal()</script> Dolga je pet kilometrov."
    execution = await engine.create_execution(recipe_id=recipe.id, user_id="user-1", input_data={"text": text})

    finished = await engine.start_execution(execution.id)

    assert finished.status == ExecutionStatus.DONE
    posted = client.calls[0]["json"]["data"]["attributes"]
    assert posted["status"] is True
    assert "kolesarsko stezo" in posted["body"]["value"]
    assert "steal" not in posted["body"]["value"]
    publish_result = store.list_step_results(execution.id)[2]
    assert publish_result.status == StepResultStatus.DONE
    assert publish_result.output_full["node_id"] == "101"
    assert publish_result.cost_cents == 0


@pytest.mark.asyncio
async def test_publish_step_without_article_completes_with_notice(store, make_recipe, make_engine, adapters, drupal_http):
    client = drupal_http([])
    adapters[StepType.DRUPAL_PUBLISH] = DrupalPublishAdapter(base_url="https://cms.example.com", token="tok-1")
    recipe = make_recipe(
        [
            {"step_index": 0, "name": "Članek", "type": "llm", "config": {}},
            {"step_index": 1, "name": "Objava", "type": "drupal_publish", "config": {}},
        ]
    )
    engine = make_engine(adapters)
    execution = await engine.create_execution(recipe_id=recipe.id, user_id="user-1", input_data={"text": "Kratko."})

    finished = await engine.start_execution(execution.id)

    assert finished.status == ExecutionStatus.DONE
    publish_result = store.list_step_results(execution.id)[1]
    assert publish_result.output_preview == SKIPPED_NO_ARTICLE
    assert publish_result.input_preview == "[no drupal_article payload]"
    assert client.calls == []
