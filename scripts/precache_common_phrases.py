"""
Warms the speech cache with the tutor's common phrases.

Usage: python scripts/precache_common_phrases.py [standard|hd] [voice]
"""

import asyncio
import sys

from chapter_tutor.core.observability.logger_config import configure_structlog
from chapter_tutor.infrastructure.container import TutorContainer


async def precache(quality: str, voice: str | None) -> None:
    container = TutorContainer()
    try:
        summary = await container.synthesis_service.precache_phrases(voice_id=voice, quality=quality)
    finally:
        await container.shutdown()
    print(
        f"Pre-cached phrases ({quality}): {summary['synthesized']} synthesized, "
        f"{summary['cached']} already cached, {summary['failed']} failed"
    )


if __name__ == "__main__":
    configure_structlog()
    quality_arg = sys.argv[1] if len(sys.argv) > 1 else "standard"
    if quality_arg not in {"standard", "hd"}:
        sys.exit(f"quality must be 'standard' or 'hd', got {quality_arg!r}")
    voice_arg = sys.argv[2] if len(sys.argv) > 2 else None
    asyncio.run(precache(quality_arg, voice_arg))
