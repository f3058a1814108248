class TutorError(Exception):
    """Base class for failures surfaced to the student as a structured error."""

    code = "TUTOR_ERROR"
    status_code = 500
    public_message = "Failed to process chat request"

    def __init__(self, message: str | None = None, *, details: object = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = details


class ChapterNotFoundError(TutorError):
    code = "CHAPTER_NOT_FOUND"
    status_code = 404
    public_message = "Chapter not found"


class EmptyQuestionError(TutorError):
    code = "EMPTY_QUESTION"
    status_code = 400
    public_message = "No message or audio provided"


class TranscriptionFailedError(TutorError):
    code = "TRANSCRIPTION_FAILED"
    status_code = 502
    public_message = "Failed to transcribe audio"


class GenerationFailedError(TutorError):
    code = "GENERATION_FAILED"
    status_code = 502
    public_message = "Failed to generate a tutor response"


class SynthesisFailedError(TutorError):
    code = "SYNTHESIS_FAILED"
    status_code = 502
    public_message = "Failed to synthesize speech"


class CacheUnavailableError(TutorError):
    code = "CACHE_UNAVAILABLE"
    status_code = 503
    public_message = "Cache store unavailable"


class DocumentStoreError(TutorError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
    public_message = "Document store unavailable"
