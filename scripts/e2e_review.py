"""End-to-end smoke test: review every group on a running server and sign."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
import time
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from viewer import Phase, ViewerApiClient, ViewerController


def _log(message: str) -> None:
    timestamp = datetime.now().isoformat(timespec="milliseconds")
    print(f"[{timestamp}] {message}")


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    text = value.strip()
    return text if text else default


async def _review(base_url: str, timeout: float, render: bool) -> None:
    async with ViewerApiClient(base_url, timeout=timeout) as api:
        controller = ViewerController(api)
        try:
            if not await controller.start():
                raise RuntimeError(controller.alert or "viewer failed to start")
            session = controller.session
            _log(f"Loaded {len(session.catalog)} group(s)")
            while session.phase is Phase.DISPLAYING:
                group = session.current_group
                for document in group.files:
                    status = session.file_status(document.id)
                    if status.startswith("Failed"):
                        raise RuntimeError(f"{document.name}: {status}")
                    if render:
                        for page in range(1, controller.page_counts.get(document.id, 0) + 1):
                            await controller.render_page(document.id, page)
                marked = controller.override()
                _log(f"Group {group.name!r}: marked {len(marked)} document(s) viewed")
                event = await controller.next()
                _log(f"Submitted {event.consent_type} consent for {event.group_name!r}")
        finally:
            await controller.close()

        failed = controller.outbox.failed()
        if failed:
            raise RuntimeError(f"{len(failed)} consent event(s) were not delivered: {failed[0].last_error}")
        _log(f"Delivered {len(controller.outbox.deliveries)} consent event(s)")


def run(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Review and sign every document group")
    parser.add_argument(
        "--base-url", default=_env("E2E_BASE_URL"), help="Server base URL, e.g. http://localhost:3000"
    )
    parser.add_argument("--timeout", type=float, default=float(_env("E2E_TIMEOUT_S", "30")))
    parser.add_argument(
        "--skip-render",
        action="store_true",
        help="Only open documents, do not rasterise their pages",
    )
    args = parser.parse_args(list(argv) if argv is not None else None)

    if not args.base_url:
        parser.error("--base-url or E2E_BASE_URL must be provided")

    started = time.perf_counter()
    asyncio.run(_review(args.base_url.rstrip("/"), max(float(args.timeout), 1.0), not args.skip_render))
    _log(f"E2E review succeeded in {time.perf_counter() - started:.2f}s")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    try:
        return run(argv)
    except SystemExit:
        raise
    except Exception as exc:  # pragma: no cover - surfaced to caller
        _log(f"E2E review failed: {exc}")
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
