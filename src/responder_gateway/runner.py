from __future__ import annotations

import argparse
import logging

import uvicorn

from responder_gateway.api.main import build_context, create_app
from responder_gateway.config import Settings, get_settings


_logger = logging.getLogger(__name__)


def expire_lapsed_once(settings: Settings) -> list[str]:
    ctx = build_context(settings)
    expired = ctx.subscriptions.expire_lapsed()
    _logger.info("expire-lapsed run finished expired=%d", len(expired))
    return expired


def serve(settings: Settings, host: str, port: int) -> None:
    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Multi-tenant automated responder gateway")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind the HTTP API to")
    parser.add_argument("--port", type=int, default=8000, help="Port for the HTTP API")
    parser.add_argument(
        "--expire-lapsed-once",
        action="store_true",
        help="Expire lapsed trial/active subscriptions once and exit",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.expire_lapsed_once:
        expire_lapsed_once(settings)
        return 0

    serve(settings, host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
