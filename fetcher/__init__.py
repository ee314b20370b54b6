"""Fetcher module for retrieving candidate images from URLs."""

from fetcher.image_fetcher import FetchResult, ImageFetcher, ImageFetchError

__all__ = [
    "FetchResult",
    "ImageFetcher",
    "ImageFetchError",
]
