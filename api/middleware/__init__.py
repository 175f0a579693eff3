from .locale import LocaleMiddleware
from .logging import LoggingMiddleware
from .request_id import RequestIDMiddleware

__all__ = [
    "RequestIDMiddleware",
    "LoggingMiddleware",
    "LocaleMiddleware",
]
