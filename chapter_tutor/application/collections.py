CHAPTERS = "chapters"
SESSIONS = "sessions"
CHAPTER_PROGRESS = "chapter_progress"
CACHED_TTS = "cached_tts_responses"
