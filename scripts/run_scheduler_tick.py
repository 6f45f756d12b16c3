#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("REMINDERS_API_BASE_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1/reminders"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/reminders"


def _trigger_tick(base_url: str, *, cron_secret: str, now_override: str | None) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if now_override:
        payload["now_override"] = now_override
    headers = {"Accept": "application/json", "Content-Type": "application/json"}
    if cron_secret:
        headers["Authorization"] = f"Bearer {cron_secret}"

    request = urllib.request.Request(
        f"{base_url}/cron",
        data=json.dumps(payload).encode("utf-8"),
        headers=headers,
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=60) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"POST cron failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run one scheduler tick against the reminders backend (for cron or manual use)."
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Backend base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1/reminders)."
        ),
    )
    parser.add_argument(
        "--now",
        default=None,
        help="ISO datetime to evaluate as 'now'. Only honoured when SCHEDULER_ALLOW_NOW_OVERRIDE=true.",
    )
    parser.add_argument(
        "--cron-secret",
        default=None,
        help="Bearer secret. Defaults to CRON_SECRET from environment/.env.",
    )
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    api_base_url = _resolve_api_base_url(args.api_base_url)
    cron_secret = (args.cron_secret or os.getenv("CRON_SECRET", "")).strip()
    result = _trigger_tick(api_base_url, cron_secret=cron_secret, now_override=args.now)

    results = result.get("results")
    if not isinstance(results, list):
        raise SystemExit("invalid /cron response: missing results[]")

    print(f"processed {result.get('processed_count', 0)} items at {result.get('server_local_time')}")
    for item in results:
        reason = f" ({item['reason']})" if item.get("reason") else ""
        error = f" error={item['error']}" if item.get("error") else ""
        print(f"  {item.get('type')} {item.get('id')} -> {item.get('status')}{reason}{error}")
    return 1 if any(item.get("status") == "error" for item in results) else 0


if __name__ == "__main__":
    raise SystemExit(main())
