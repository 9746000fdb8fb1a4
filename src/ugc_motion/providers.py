"""External collaborators consumed by the pipeline.

Each collaborator is a small protocol. HTTP implementations talk JSON to a
configured endpoint through ``httpx``; fixture implementations produce
deterministic media in the object store so the whole pipeline can run offline.
"""

from __future__ import annotations

import base64
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import httpx
import yaml
from typing_extensions import Protocol, runtime_checkable

from .fixture_clips import FixtureClip, fixture_image_bytes
from .schemas import NOMINAL_CLIP_SECONDS, AvatarRef, DemoRef, PlannerInput, ProductInfo
from .storage import content_digest, extension_for

LOG = logging.getLogger(__name__)


@runtime_checkable
class ObjectStore(Protocol):
    def store(self, data: bytes, key: str, mime_type: str) -> str:
        ...

    def delete(self, url: str) -> bool:
        ...


class Planner(Protocol):
    def plan(self, planner_input: PlannerInput) -> Mapping[str, Any]:
        ...


class ImageSynthesizer(Protocol):
    def composite(self, avatar_image_url: str, product_image_urls: Sequence[str], prompt: str) -> str:
        ...


class VideoSynthesizer(Protocol):
    def synthesize(self, source_image_url: str, prompt: str) -> str:
        ...


class TextModel(Protocol):
    def generate(self, prompt: str) -> str:
        ...


class AssetCatalog(Protocol):
    def get_avatar(self, avatar_id: str) -> AvatarRef:
        ...

    def get_product(self, product_id: str) -> ProductInfo:
        ...

    def get_demos(self, demo_ids: Iterable[str]) -> List[DemoRef]:
        ...


# --------------------------------------------------------------------- catalog
class InMemoryCatalog:
    """Avatars, products and demos keyed by id."""

    def __init__(
        self,
        *,
        avatars: Iterable[AvatarRef] = (),
        products: Iterable[ProductInfo] = (),
        demos: Iterable[DemoRef] = (),
    ) -> None:
        self.avatars: Dict[str, AvatarRef] = {a.id: a for a in avatars}
        self.products: Dict[str, ProductInfo] = {p.id: p for p in products}
        self.demos: Dict[str, DemoRef] = {d.id: d for d in demos}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> InMemoryCatalog:
        return cls(
            avatars=[AvatarRef.model_validate(a) for a in data.get("avatars") or []],
            products=[ProductInfo.model_validate(p) for p in data.get("products") or []],
            demos=[DemoRef.model_validate(d) for d in data.get("demos") or []],
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> InMemoryCatalog:
        """Load a YAML (or JSON) catalog with ``avatars``/``products``/``demos`` lists."""
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Catalog file {path} must contain a mapping")
        return cls.from_mapping(data)

    def get_avatar(self, avatar_id: str) -> AvatarRef:
        try:
            return self.avatars[avatar_id]
        except KeyError:
            raise KeyError(f"Unknown avatar: {avatar_id}") from None

    def get_product(self, product_id: str) -> ProductInfo:
        try:
            return self.products[product_id]
        except KeyError:
            raise KeyError(f"Unknown product: {product_id}") from None

    def get_demos(self, demo_ids: Iterable[str]) -> List[DemoRef]:
        return [self.demos[d] for d in demo_ids if d in self.demos]


# ---------------------------------------------------------------------- http
class _JsonEndpoint:
    def __init__(
        self,
        endpoint: str,
        *,
        api_key: Optional[str] = None,
        timeout_s: float = 300.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout_s)
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    def _post(self, path: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        url = f"{self.endpoint}{path}"
        resp = self._client.post(url, json=dict(payload), headers=self._headers)
        resp.raise_for_status()
        body = resp.json()
        if not isinstance(body, dict):
            raise ValueError(f"Expected a JSON object from {url}")
        return body

    def _get(self, path_or_url: str) -> Dict[str, Any]:
        url = path_or_url if path_or_url.startswith(("http://", "https://")) else f"{self.endpoint}{path_or_url}"
        resp = self._client.get(url, headers=self._headers)
        resp.raise_for_status()
        body = resp.json()
        if not isinstance(body, dict):
            raise ValueError(f"Expected a JSON object from {url}")
        return body

    def close(self) -> None:
        self._client.close()


def _media_url_from_response(
    body: Mapping[str, Any],
    *,
    store: ObjectStore,
    key_prefix: str,
    default_mime: str,
) -> str:
    """Return the media URL in `body`, storing inline base64 payloads first."""
    url = body.get("url")
    if isinstance(url, str) and url:
        return url
    encoded = body.get("data") or body.get("base64")
    if not encoded:
        raise ValueError("response carries neither 'url' nor inline 'data'")
    data = base64.b64decode(encoded)
    mime_type = body.get("mime_type") or default_mime
    key = f"{key_prefix}/{uuid.uuid4().hex}{extension_for(mime_type)}"
    return store.store(data, key, mime_type)


class HttpImageSynthesizer(_JsonEndpoint):
    """``POST {endpoint}/composite`` → ``{"url"}`` or ``{"data", "mime_type"}``."""

    def __init__(self, endpoint: str, store: ObjectStore, **kwargs: Any) -> None:
        super().__init__(endpoint, **kwargs)
        self.store = store

    def composite(self, avatar_image_url: str, product_image_urls: Sequence[str], prompt: str) -> str:
        body = self._post(
            "/composite",
            {
                "avatar_image_url": avatar_image_url,
                "product_image_urls": list(product_image_urls),
                "prompt": prompt,
            },
        )
        return _media_url_from_response(body, store=self.store, key_prefix="generated/images", default_mime="image/png")


class HttpVideoSynthesizer(_JsonEndpoint):
    """``POST {endpoint}/synthesize``; long-running requests are polled.

    The service either answers with the finished media, or with
    ``{"operation": "<url or path>"}`` which is polled every
    `poll_interval_s` until it reports ``{"done": true, ...media...}``.
    """

    def __init__(
        self,
        endpoint: str,
        store: ObjectStore,
        *,
        poll_interval_s: float = 10.0,
        max_wait_s: float = 600.0,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs: Any,
    ) -> None:
        super().__init__(endpoint, **kwargs)
        self.store = store
        self.poll_interval_s = poll_interval_s
        self.max_wait_s = max_wait_s
        self._sleep = sleep

    def synthesize(self, source_image_url: str, prompt: str) -> str:
        body = self._post(
            "/synthesize",
            {"image_url": source_image_url, "prompt": prompt, "duration_seconds": NOMINAL_CLIP_SECONDS},
        )
        operation = body.get("operation")
        waited = 0.0
        while operation and not body.get("done"):
            if waited >= self.max_wait_s:
                raise TimeoutError(f"video synthesis operation {operation} did not finish in {self.max_wait_s:g}s")
            self._sleep(self.poll_interval_s)
            waited += self.poll_interval_s
            body = self._get(str(operation))
        if body.get("error"):
            raise RuntimeError(f"video synthesis failed: {body['error']}")
        return _media_url_from_response(body, store=self.store, key_prefix="generated/videos", default_mime="video/mp4")


class HttpTextModel(_JsonEndpoint):
    """``POST {endpoint}/generate`` with ``{"model", "prompt"}`` → ``{"text"}``."""

    def __init__(self, endpoint: str, *, model: str = "default", **kwargs: Any) -> None:
        super().__init__(endpoint, **kwargs)
        self.model = model

    def generate(self, prompt: str) -> str:
        body = self._post("/generate", {"model": self.model, "prompt": prompt})
        text = body.get("text")
        if not isinstance(text, str):
            raise ValueError("text model response has no 'text' field")
        return text


# ------------------------------------------------------------------- fixtures
class FixtureImageSynthesizer:
    """Stores a deterministic stand-in image per request and records calls."""

    def __init__(self, store: ObjectStore) -> None:
        self.store = store
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def composite(self, avatar_image_url: str, product_image_urls: Sequence[str], prompt: str) -> str:
        with self._lock:
            self.calls.append(
                {"avatar_image_url": avatar_image_url, "product_image_urls": list(product_image_urls), "prompt": prompt}
            )
        label = content_digest("|".join([avatar_image_url, *product_image_urls, prompt]).encode("utf-8"))[:16]
        return self.store.store(fixture_image_bytes(label), f"fixtures/images/{label}.json", "application/json")


class FixtureVideoSynthesizer:
    """Produces an 8s fixture clip labelled from the prompt and records calls."""

    def __init__(self, store: ObjectStore, *, duration_s: float = NOMINAL_CLIP_SECONDS) -> None:
        self.store = store
        self.duration_s = duration_s
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def synthesize(self, source_image_url: str, prompt: str) -> str:
        with self._lock:
            self.calls.append({"source_image_url": source_image_url, "prompt": prompt, "at": time.monotonic()})
            attempt = len(self.calls)
        label = content_digest(f"{source_image_url}|{prompt}".encode("utf-8"))[:12]
        clip = FixtureClip.generate(label, self.duration_s)
        return self.store.store(clip.to_bytes(), f"fixtures/videos/{label}-{attempt}.json", "application/json")


class StaticPlanner:
    """Returns a fixed plan document, or the result of a callable."""

    def __init__(self, plan: Union[Mapping[str, Any], Callable[[PlannerInput], Mapping[str, Any]]]) -> None:
        self._plan = plan
        self.calls: List[PlannerInput] = []

    def plan(self, planner_input: PlannerInput) -> Mapping[str, Any]:
        self.calls.append(planner_input)
        if callable(self._plan):
            return self._plan(planner_input)
        return self._plan


class UnconfiguredService:
    """Placeholder for a collaborator with no endpoint; fails when used."""

    def __init__(self, setting: str) -> None:
        self.setting = setting

    def _fail(self) -> None:
        raise RuntimeError(f"service not configured: set {self.setting} or enable UGC_USE_FIXTURE")

    def plan(self, planner_input: PlannerInput) -> Mapping[str, Any]:
        self._fail()
        return {}

    def composite(self, avatar_image_url: str, product_image_urls: Sequence[str], prompt: str) -> str:
        self._fail()
        return ""

    def synthesize(self, source_image_url: str, prompt: str) -> str:
        self._fail()
        return ""


__all__ = [
    "ObjectStore",
    "Planner",
    "ImageSynthesizer",
    "VideoSynthesizer",
    "TextModel",
    "AssetCatalog",
    "InMemoryCatalog",
    "HttpImageSynthesizer",
    "HttpVideoSynthesizer",
    "HttpTextModel",
    "FixtureImageSynthesizer",
    "FixtureVideoSynthesizer",
    "StaticPlanner",
    "UnconfiguredService",
]
