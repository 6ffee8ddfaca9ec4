from app.services.errors import MalformedInputError, TurnError, UpstreamError
from app.services.result import Result

__all__ = ["MalformedInputError", "Result", "TurnError", "UpstreamError"]
