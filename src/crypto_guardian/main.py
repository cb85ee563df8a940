from __future__ import annotations

import asyncio
import logging

from .checker import AlertChecker
from .config import load_settings


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    checker = AlertChecker.from_settings(settings)
    try:
        await checker.store.create_schema()
    except Exception:
        await checker.close()
        raise
    await checker.run()


def main() -> None:
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
