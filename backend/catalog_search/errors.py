"""
Search error taxonomy.

Each error carries the HTTP status the API answers with and a short message
that is safe to show to shoppers. Internal exception text goes to the logs,
never into ``user_message``.
"""


class SearchError(Exception):
    code = "search_error"
    status_code = 500
    retryable = False
    user_message = "Search is temporarily unavailable. Please try again."

    def __init__(self, detail: str = "", user_message: str = None):
        super().__init__(detail or self.user_message)
        self.detail = detail
        if user_message:
            self.user_message = user_message

    def to_payload(self) -> dict:
        return {"error": self.code, "message": self.user_message}


class InvalidInput(SearchError):
    code = "invalid_input"
    status_code = 400
    user_message = "The search request is invalid."


class UnsupportedFormat(InvalidInput):
    code = "unsupported_format"
    user_message = "Unsupported image format. Please upload a JPEG, PNG or WebP image."


class CorruptImage(SearchError):
    code = "corrupt_image"
    status_code = 500
    user_message = "The image appears to be corrupted. Please try a different image."


class EncodingFailed(SearchError):
    code = "encoding_failed"
    status_code = 500
    retryable = True
    user_message = "We could not analyse this image right now. Please try again."


class EncodingTimeout(EncodingFailed):
    code = "encoding_timeout"
    user_message = "Image analysis took too long. Please try again in a moment."


class IndexUnavailable(SearchError):
    code = "index_unavailable"
    status_code = 503
    retryable = True
    user_message = "Search is temporarily unavailable. Please try again."
