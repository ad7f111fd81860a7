#!/usr/bin/env python3
"""
Sync built-in recipe presets into the recipes table.

Required environment variables:
- SUPABASE_URL
- SUPABASE_SERVICE_KEY
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.services.preset_sync import sync_all_presets


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sync recipe presets into the database.")
    parser.add_argument(
        "--create-missing",
        action="store_true",
        help="Create recipes for presets that have no matching row yet.",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    report = sync_all_presets(create_missing=args.create_missing)
    for entry in report:
        print(json.dumps(entry, ensure_ascii=False))
    return 1 if any(entry["action"] == "error" for entry in report) else 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except Exception as exc:  # noqa: BLE001
        print(f"sync_presets failed: {exc}", file=sys.stderr)
        raise SystemExit(1)
