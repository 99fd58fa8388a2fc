"""Best-effort extraction of an image reference from free-form model output."""
import json
import re
from typing import Any, Iterator, Optional

from creditflow.errors import GenerationRejectedError

REFUSAL_PHRASES = (
    "i'm sorry",
    "i am sorry",
    "unable to generate",
    "cannot",
    "can't",
    "couldn't complete",
    "couldn't",
    "encountered an issue",
    "failed to create",
    "content policy",
)

PLACEHOLDER_MARKERS = (
    "placeholder",
    "placehold.co",
    "via.placeholder",
    "example.com",
    "dummyimage.com",
)

JSON_URL_KEYS = ("url", "image", "image_url", "imageUrl", "src", "source", "path", "link")

IMAGE_LOCATION_HINTS = ("/image", "/img", "/photo", "/media", "cdn", "storage", "assets", "oss", "blob")

_MARKDOWN_IMAGE = re.compile(r"!\[[^\]]*\]\((https?://[^\s)]+)\)")
_IMG_TAG = re.compile(r"<img[^>]+src=[\"'](https?://[^\"']+)[\"']", re.IGNORECASE)
_JSON_OBJECT = re.compile(r"\{[^{}]*\}")
_IMAGE_EXTENSION_URL = re.compile(r"https?://[^\s\"'<>()\]]+?\.(?:jpe?g|png|gif|webp|bmp)(?:\?[^\s\"'<>()\]]*)?", re.IGNORECASE)
_ANY_URL = re.compile(r"https?://[^\s\"'<>()\]]+")


def is_placeholder(url: str) -> bool:
    lowered = url.lower()
    return any(marker in lowered for marker in PLACEHOLDER_MARKERS)


def _clean(url: str) -> str:
    return url.strip().rstrip(".,;:!?")


def _json_urls(text: str) -> Iterator[str]:
    for fragment in _JSON_OBJECT.findall(text):
        try:
            data = json.loads(fragment)
        except ValueError:
            continue
        yield from _urls_in(data)


def _urls_in(data: Any) -> Iterator[str]:
    if isinstance(data, dict):
        for key in JSON_URL_KEYS:
            value = data.get(key)
            if isinstance(value, str) and value.startswith(("http://", "https://")):
                yield value
        for value in data.values():
            if isinstance(value, (dict, list)):
                yield from _urls_in(value)
    elif isinstance(data, list):
        for item in data:
            yield from _urls_in(item)


def _looks_like_image_location(url: str) -> bool:
    lowered = url.lower()
    return any(hint in lowered for hint in IMAGE_LOCATION_HINTS)


def _candidates(text: str) -> Iterator[str]:
    """Candidate URLs, most trustworthy pattern first."""
    yield from _MARKDOWN_IMAGE.findall(text)
    yield from _IMG_TAG.findall(text)
    yield from _json_urls(text)
    yield from _IMAGE_EXTENSION_URL.findall(text)
    yield from (url for url in _ANY_URL.findall(text) if _looks_like_image_location(url))


def find_image_reference(text: str) -> Optional[str]:
    """
    Return the first non-placeholder image URL found in text, or None.

    Candidates in order: markdown image links, <img src> attributes, URLs
    under common keys of embedded JSON objects, URLs with an image
    extension, then any URL that looks like an image location.
    """
    if not text:
        return None
    for candidate in _candidates(text):
        url = _clean(candidate)
        if url and not is_placeholder(url):
            return url
    return None


def is_refusal(text: str) -> bool:
    """A refusal phrase with no image-looking URL anywhere in the text."""
    lowered = text.lower()
    if not any(phrase in lowered for phrase in REFUSAL_PHRASES):
        return False
    has_image_url = bool(_MARKDOWN_IMAGE.search(text) or _IMAGE_EXTENSION_URL.search(text))
    return not has_image_url


def extract_image_reference(text: str) -> str:
    """
    Extract the generated image reference from a model response.

    Args:
        text: Raw response content

    Returns:
        Image URL

    Raises:
        GenerationRejectedError: If the response is a refusal or holds no usable image URL
    """
    if not text or not text.strip():
        raise GenerationRejectedError("Generation service returned an empty response")

    if is_refusal(text):
        raise GenerationRejectedError(
            "Generation service refused the request",
            {"response_excerpt": text[:200]},
        )

    url = find_image_reference(text)
    if url is None:
        raise GenerationRejectedError(
            "No image reference found in generation response",
            {"response_excerpt": text[:200]},
        )
    return url
