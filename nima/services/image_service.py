# FILE: nima/services/image_service.py
"""
Virtual try-on rendering.

ImageProvider.generate(user_photo_ref, item_refs) -> PNG bytes, or raises
ProviderFailure. The default provider sends the user's photo plus every item
image to OpenAI images.edit; the SDK is sync, so it runs in a worker thread.
"""

import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from nima.core import config
from nima.core.errors import ProviderFailure
from nima.services import storage_service

logger = logging.getLogger("nima.images")

MAX_IMAGE_BYTES = 20 * 1024 * 1024


def build_tryon_prompt(item_refs: List[Dict[str, Any]]) -> str:
    lines = [
        "Virtual try-on fashion photo: Create an image of this person (shown in the first "
        "reference image) wearing the clothing items shown in the other reference images.",
        "",
        "Reference Image 1: Photo of the person who should be wearing the clothes",
    ]
    for i, item in enumerate(item_refs):
        lines.append(f"Reference Image {i + 2}: {item.get('description') or 'Clothing item'}")
    lines += [
        "",
        "Important:",
        "- Keep the person's face, body type & size, and identity exactly as shown in Reference Image 1",
        "- Dress them in ALL the clothing items from the other reference images",
        "- Make it look like a professional fashion photograph",
        "- The person should look natural and confident wearing these items",
    ]
    return "\n".join(lines)


async def fetch_image(ref: str, client: Optional[httpx.AsyncClient] = None) -> bytes:
    """Load an image from a media ref or an http(s) URL."""
    path = storage_service.local_path(ref)
    if path is not None:
        if not path.is_file():
            raise ProviderFailure(f"Image not found: {ref}")
        return await asyncio.to_thread(path.read_bytes)

    async def _get(c: httpx.AsyncClient) -> bytes:
        resp = await c.get(ref, timeout=30)
        resp.raise_for_status()
        if len(resp.content) > MAX_IMAGE_BYTES:
            raise ProviderFailure(f"Image too large: {ref}")
        return resp.content

    try:
        if client is not None:
            return await _get(client)
        async with httpx.AsyncClient(follow_redirects=True) as c:
            return await _get(c)
    except httpx.HTTPError as exc:
        raise ProviderFailure(f"Could not fetch image {ref}: {exc}") from exc


class ImageProvider:
    name = "base"

    async def generate(self, user_photo_ref: str, item_refs: List[Dict[str, Any]]) -> bytes:
        raise NotImplementedError


class OpenAIImageProvider(ImageProvider):
    name = config.GENERATION_PROVIDER_NAME

    def __init__(self, client=None):
        self._client = client

    def _get_client(self):
        if self._client is None:
            try:
                self._client = config.get_openai_client()
            except RuntimeError as exc:
                raise ProviderFailure(str(exc)) from exc
        return self._client

    async def generate(self, user_photo_ref: str, item_refs: List[Dict[str, Any]]) -> bytes:
        if not item_refs:
            raise ProviderFailure("No item images to render")

        async with httpx.AsyncClient(follow_redirects=True) as http:
            photo = await fetch_image(user_photo_ref, http)
            items = [await fetch_image(item["image_url"], http) for item in item_refs]

        images: List[Tuple[str, bytes, str]] = [("person.png", photo, "image/png")]
        images += [(f"item_{i + 1}.png", data, "image/png") for i, data in enumerate(items)]
        prompt = build_tryon_prompt(item_refs)
        client = self._get_client()

        def _call():
            return client.images.edit(
                model=config.IMAGE_MODEL,
                image=images,
                prompt=prompt,
                size=config.IMAGE_SIZE,
            )

        try:
            resp = await asyncio.to_thread(_call)
        except Exception as exc:
            logger.error("OpenAI image edit failed: %s", exc)
            raise ProviderFailure(f"Image generation failed: {exc}") from exc

        b64 = resp.data[0].b64_json if resp.data else None
        if not b64:
            raise ProviderFailure("Image generation returned no image")
        return base64.b64decode(b64)


# Lazy initialization - the server starts without an OpenAI key
_provider: Optional[ImageProvider] = None


def get_image_provider() -> ImageProvider:
    global _provider
    if _provider is None:
        _provider = OpenAIImageProvider()
    return _provider


def set_image_provider(provider: Optional[ImageProvider]) -> None:
    global _provider
    _provider = provider
