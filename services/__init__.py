"""Services package for Visual Match: search providers, comparator, notifier, dispatch."""

from services.face_comparator import RekognitionComparator, SimilarityComparator
from services.notifier import Notifier, NullNotifier, WebhookNotifier
from services.search_provider import ProbeImage, ReverseImageProvider, TextQueryProvider

__all__ = [
    "RekognitionComparator",
    "SimilarityComparator",
    "Notifier",
    "NullNotifier",
    "WebhookNotifier",
    "ProbeImage",
    "ReverseImageProvider",
    "TextQueryProvider",
]
