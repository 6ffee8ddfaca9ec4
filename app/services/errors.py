class TurnError(Exception):
    """A turn could not be completed; ``message`` is safe to show to the caller."""

    status_code = 502

    def __init__(self, stage: str, message: str):
        self.stage = stage
        self.message = message
        super().__init__(f"{stage}: {message}")


class UpstreamError(TurnError):
    status_code = 502


class MalformedInputError(TurnError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__("input", message)
