from .base import ImageProvider, ProviderImage
from .http_provider import HttpImageProvider

__all__ = ["ImageProvider", "ProviderImage", "HttpImageProvider"]
