"""
Removes cached speech audio.

Usage: python scripts/clear_speech_cache.py [--expired-only]
"""

import asyncio
import sys

from chapter_tutor.core.observability.logger_config import configure_structlog
from chapter_tutor.infrastructure.container import TutorContainer


async def clear_speech_cache(expired_only: bool) -> None:
    container = TutorContainer()
    try:
        if expired_only:
            removed = await container.speech_cache.sweep_expired()
        else:
            removed = await container.speech_cache.clear()
    finally:
        await container.shutdown()
    label = "expired" if expired_only else "cached"
    print(f"Removed {removed} {label} speech entries")


if __name__ == "__main__":
    configure_structlog()
    asyncio.run(clear_speech_cache(expired_only="--expired-only" in sys.argv[1:]))
