# chronicle.py
# Scene illustration service for Gothic Chronicle using FastAPI
# - Resolves a room name plus a serialized game-state string into an image prompt and a deterministic seed
# - Generated JPEG bytes are cached behind stable URLs so repeat requests never reach the model again
# - settings.json (same folder) stores the model id, origin allow-list, cache location and trigger flags
# - Image generation goes to Cloudflare Workers AI over REST (httpx)
# - __main__ entry-point wraps uvicorn for local hosting

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import dataclasses
import hashlib
import json
import logging
import os
import sys
import tempfile
import time
import unicodedata
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Coroutine,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    TypeVar,
    Union,
)
from urllib.parse import quote, urlencode

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from pydantic import BaseModel, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

APP_DIR = Path(__file__).parent
SETTINGS_FILE = Path(os.getenv("CHRONICLE_SETTINGS_FILE") or APP_DIR / "settings.json")

SERVICE_NAME = "gothic-chronicle-images"
DEFAULT_IMAGE_MODEL = "@cf/leonardo/phoenix-1.0"
DEFAULT_ROOM = "gothic estate"
DEFAULT_IMAGE_SIZE = 768
DEFAULT_REQUEST_TIMEOUT_SECONDS = 120.0
DEFAULT_CACHE_MAX_ENTRIES = 256
DEFAULT_ALLOWED_ORIGINS = ["https://richcande1-rca.github.io"]

IMAGE_MEDIA_TYPE = "image/jpeg"
# Cache keys carry every varying input, so served bytes never need revalidation.
IMAGE_CACHE_CONTROL = "public, max-age=31536000, immutable"
IMAGE_ID_PREFIX = "img_"

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"
WORKERS_AI_RUN_URL = f"{CLOUDFLARE_API_BASE}/accounts/{{account_id}}/ai/run/{{model}}"

# -------- Defaults --------
DEFAULT_SETTINGS: Dict[str, Any] = {
    "service_name": SERVICE_NAME,
    "image_model": DEFAULT_IMAGE_MODEL,
    "allowed_origins": list(DEFAULT_ALLOWED_ORIGINS),
    "default_room": DEFAULT_ROOM,
    "image_width": DEFAULT_IMAGE_SIZE,
    "image_height": DEFAULT_IMAGE_SIZE,
    "cache_dir": "",  # empty keeps the cache in process memory
    "cache_max_entries": DEFAULT_CACHE_MAX_ENTRIES,  # memory cache only; least recently used entries go first
    "cloudflare_account_id": "",
    "cloudflare_api_token": "",
    "request_timeout_seconds": DEFAULT_REQUEST_TIMEOUT_SECONDS,
    "recomposition_triggers": {},  # room -> flags allowed to pick the variant composition
}


# -------------------- Hashing --------------------
def sha256_hex(text: str) -> str:
    """Return the SHA-256 hex digest of *text* encoded as UTF-8."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def seed_from_text(text: str) -> int:
    """Derive an unsigned 32-bit generation seed from the first 8 hex digits of the digest."""
    return int(sha256_hex(text)[:8], 16) & 0xFFFFFFFF


def image_id_for(payload: Mapping[str, Any]) -> str:
    """Content-addressed image label for a normalized request payload.

    The payload is serialized compactly with keys in insertion order, so callers
    must build it with a fixed key order.
    """
    serialized = json.dumps(dict(payload), separators=(",", ":"), ensure_ascii=False)
    return IMAGE_ID_PREFIX + sha256_hex(serialized)


# -------------------- State parsing --------------------
STATE_SEGMENT_SEPARATOR = "|"
STATE_TOKEN_SEPARATOR = ","
FLAG_SEGMENT_PREFIX = "f:"
MILESTONE_SEGMENT_PREFIX = "m:"


@dataclass(frozen=True)
class ParsedState:
    flags: FrozenSet[str] = frozenset()
    milestones: FrozenSet[str] = frozenset()


def _split_state_tokens(raw: str) -> Set[str]:
    tokens = (token.strip() for token in raw.split(STATE_TOKEN_SEPARATOR))
    return {token for token in tokens if token}


def parse_state(state: Optional[str]) -> ParsedState:
    """Decode ``f:flag,flag|m:milestone`` into flag and milestone sets.

    Unknown segment prefixes are skipped and no token vocabulary is enforced,
    so new narrative flags pass through without touching this parser.
    """
    if not state:
        return ParsedState()
    flags: Set[str] = set()
    milestones: Set[str] = set()
    for segment in str(state).split(STATE_SEGMENT_SEPARATOR):
        segment = segment.lstrip()
        if segment.startswith(FLAG_SEGMENT_PREFIX):
            flags |= _split_state_tokens(segment[len(FLAG_SEGMENT_PREFIX):])
        elif segment.startswith(MILESTONE_SEGMENT_PREFIX):
            milestones |= _split_state_tokens(segment[len(MILESTONE_SEGMENT_PREFIX):])
    return ParsedState(flags=frozenset(flags), milestones=frozenset(milestones))


# -------------------- Landmark registry --------------------
LANDMARK_PLACEHOLDER = "{landmark}"
DEFAULT_VARIANT_TAG = "variantB"


@dataclass(frozen=True)
class StateClause:
    """Prompt addition gated on flags/milestones, anchored to the room's landmark."""

    template: str
    flags: FrozenSet[str] = frozenset()
    milestones: FrozenSet[str] = frozenset()

    def applies(self, state: ParsedState) -> bool:
        return self.flags <= state.flags and self.milestones <= state.milestones

    def render(self, landmark: str) -> str:
        return self.template.replace(LANDMARK_PLACEHOLDER, landmark)


@dataclass(frozen=True)
class LandmarkRoom:
    names: FrozenSet[str]
    setting: str
    landmark: str
    secondary: Tuple[str, ...] = ()
    state_clauses: Tuple[StateClause, ...] = ()
    triggers: FrozenSet[str] = frozenset()
    variant_tag: str = DEFAULT_VARIANT_TAG

    def __post_init__(self) -> None:
        if not self.names:
            raise ValueError(f"Landmark room {self.setting!r} needs at least one name.")
        for clause in self.state_clauses:
            if LANDMARK_PLACEHOLDER not in clause.template:
                raise ValueError(
                    f"State clause for {self.setting!r} must reference {LANDMARK_PLACEHOLDER}: {clause.template!r}"
                )
            if not clause.flags and not clause.milestones:
                raise ValueError(f"State clause for {self.setting!r} has no gating flag or milestone.")

    def landmark_clause(self) -> str:
        features = [f"a {self.landmark} is always present in the {self.setting}"]
        if self.secondary:
            features.append(", ".join(self.secondary))
        features.append("keep the same layout and landmarks across renders; only mood/characters may change.")
        return "Establishing features: " + "; ".join(features)

    def matches(self, room: str) -> bool:
        return normalize_room_name(room) in {normalize_room_name(name) for name in self.names}


LANDMARK_ROOMS: Tuple[LandmarkRoom, ...] = (
    LandmarkRoom(
        names=frozenset({"courtyard"}),
        setting="courtyard",
        landmark="central cracked stone fountain",
        secondary=(
            "wet cobblestones",
            "ivy-covered stone walls",
            "weathered statues",
            "wrought-iron gate in the distance",
        ),
        state_clauses=(
            StateClause(
                flags=frozenset({"courtyard_ghost_seen"}),
                template=(
                    "Include a tall pale ghostly apparition beside the {landmark}; "
                    "semi-transparent, subtle glow, Victorian haunting presence; "
                    "mist coiling around its feet; eerie but clear focal subject."
                ),
            ),
        ),
        # First appearance of the ghost is the moment the courtyard may be reframed.
        triggers=frozenset({"courtyard_ghost_seen"}),
    ),
)

# Applied to every room, after any landmark clauses, in table order.
AMBIENT_MODIFIERS: Tuple[Tuple[str, str], ...] = (
    ("candle_lit", "Add warm candlelight highlights and deeper shadow contrast."),
)


def normalize_room_name(room: Optional[str]) -> str:
    if not room:
        return ""
    return unicodedata.normalize("NFKC", str(room)).strip().casefold()


def find_landmark_room(
    room: Optional[str],
    rooms: Iterable[LandmarkRoom] = LANDMARK_ROOMS,
) -> Optional[LandmarkRoom]:
    key = normalize_room_name(room)
    if not key:
        return None
    for entry in rooms:
        if entry.matches(key):
            return entry
    return None


def apply_trigger_overrides(
    rooms: Iterable[LandmarkRoom],
    overrides: Mapping[str, Iterable[str]],
) -> Tuple[LandmarkRoom, ...]:
    """Replace the recomposition triggers of registry rooms named in *overrides*."""
    normalized: Dict[str, FrozenSet[str]] = {}
    for room, flags in overrides.items():
        if isinstance(flags, str):
            flags = [flags]
        normalized[normalize_room_name(room)] = frozenset(
            str(flag).strip() for flag in flags if str(flag).strip()
        )
    updated: List[LandmarkRoom] = []
    for entry in rooms:
        replacement: Optional[FrozenSet[str]] = None
        for name in entry.names:
            key = normalize_room_name(name)
            if key in normalized:
                replacement = normalized[key]
                break
        updated.append(entry if replacement is None else dataclasses.replace(entry, triggers=replacement))
    return tuple(updated)


# -------------------- Prompt composition --------------------
BASE_STYLE_CLAUSES: Tuple[str, ...] = (
    "Ultra realistic cinematic gothic horror.",
    "Scene: {room}. Fog, moonlight, ancient stone, dramatic shadows.",
    "High detail, cinematic lighting, moody atmosphere.",
    "No text, no watermark, no modern objects.",
)


def compose_prompt(
    room: str,
    state: ParsedState,
    rooms: Iterable[LandmarkRoom] = LANDMARK_ROOMS,
) -> str:
    """Build the generation prompt for *room* in *state*.

    Clauses only ever append: style lock, then the landmark clause for registry
    rooms (emitted whatever the state), then state clauses anchored to that
    same landmark, then ambient modifiers. Iteration follows the registry
    tables, never the state sets, so the text is stable for equal inputs.
    """
    parts: List[str] = [clause.replace("{room}", room) for clause in BASE_STYLE_CLAUSES]
    landmark_room = find_landmark_room(room, rooms)
    if landmark_room is not None:
        parts.append(landmark_room.landmark_clause())
        for clause in landmark_room.state_clauses:
            if clause.applies(state):
                parts.append(clause.render(landmark_room.landmark))
    for flag, modifier in AMBIENT_MODIFIERS:
        if flag in state.flags:
            parts.append(modifier)
    return " ".join(parts)


# -------------------- Seed policy --------------------
SEED_KEY_SEPARATOR = "::"


def seed_key(
    room: str,
    state: str,
    seed_token: str,
    rooms: Iterable[LandmarkRoom] = LANDMARK_ROOMS,
) -> str:
    """Return the string hashed into the generation seed.

    Landmark rooms keep one composition per seed token and ignore state text,
    except that a recomposition trigger flag selects the room's variant tag.
    Every other room lets the full state string reshuffle the composition.
    """
    landmark_room = find_landmark_room(room, rooms)
    if landmark_room is None:
        return SEED_KEY_SEPARATOR.join((room, state, seed_token))
    parts = [room, seed_token]
    if landmark_room.triggers & parse_state(state).flags:
        parts.append(landmark_room.variant_tag)
    return SEED_KEY_SEPARATOR.join(parts)


# -------------------- Configuration --------------------
def _get_setting_str(settings: Mapping[str, Any], key: str, *, default: str = "") -> str:
    value = settings.get(key)
    if isinstance(value, str):
        return value.strip()
    return default


def _get_setting_number(settings: Mapping[str, Any], key: str, default: float) -> float:
    value = settings.get(key)
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def _normalize_origins(raw: Any) -> FrozenSet[str]:
    if isinstance(raw, str):
        raw = raw.split(",")
    if not isinstance(raw, (list, tuple, set, frozenset)):
        return frozenset(DEFAULT_ALLOWED_ORIGINS)
    return frozenset(str(origin).strip().rstrip("/") for origin in raw if str(origin).strip())


@dataclass(frozen=True)
class ServiceConfig:
    service_name: str = SERVICE_NAME
    image_model: str = DEFAULT_IMAGE_MODEL
    allowed_origins: FrozenSet[str] = frozenset(DEFAULT_ALLOWED_ORIGINS)
    default_room: str = DEFAULT_ROOM
    image_width: int = DEFAULT_IMAGE_SIZE
    image_height: int = DEFAULT_IMAGE_SIZE
    cache_dir: str = ""
    cache_max_entries: int = DEFAULT_CACHE_MAX_ENTRIES
    cloudflare_account_id: str = field(default="", repr=False)
    cloudflare_api_token: str = field(default="", repr=False)
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    landmark_rooms: Tuple[LandmarkRoom, ...] = LANDMARK_ROOMS


def load_settings() -> Dict[str, Any]:
    merged = DEFAULT_SETTINGS.copy()
    if not SETTINGS_FILE.exists():
        return merged
    try:
        data = json.loads(SETTINGS_FILE.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        print(f"Ignoring unreadable settings file {SETTINGS_FILE}: {exc!r}", file=sys.stderr, flush=True)
        return merged
    if isinstance(data, dict):
        # Preserve any forward-compatible keys while ensuring defaults exist.
        merged.update(data)
    return merged


def build_config(settings: Mapping[str, Any]) -> ServiceConfig:
    """Freeze merged settings (plus Cloudflare credentials from the environment) into a ServiceConfig."""
    triggers = settings.get("recomposition_triggers")
    rooms = LANDMARK_ROOMS
    if isinstance(triggers, Mapping) and triggers:
        rooms = apply_trigger_overrides(rooms, triggers)
    return ServiceConfig(
        service_name=_get_setting_str(settings, "service_name") or SERVICE_NAME,
        image_model=_get_setting_str(settings, "image_model") or DEFAULT_IMAGE_MODEL,
        allowed_origins=_normalize_origins(settings.get("allowed_origins", DEFAULT_ALLOWED_ORIGINS)),
        default_room=_get_setting_str(settings, "default_room") or DEFAULT_ROOM,
        image_width=int(_get_setting_number(settings, "image_width", DEFAULT_IMAGE_SIZE)),
        image_height=int(_get_setting_number(settings, "image_height", DEFAULT_IMAGE_SIZE)),
        cache_dir=_get_setting_str(settings, "cache_dir"),
        cache_max_entries=int(_get_setting_number(settings, "cache_max_entries", DEFAULT_CACHE_MAX_ENTRIES)),
        cloudflare_account_id=(
            os.getenv("CLOUDFLARE_ACCOUNT_ID") or _get_setting_str(settings, "cloudflare_account_id")
        ).strip(),
        cloudflare_api_token=(
            os.getenv("CLOUDFLARE_API_TOKEN") or _get_setting_str(settings, "cloudflare_api_token")
        ).strip(),
        request_timeout_seconds=_get_setting_number(
            settings, "request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS
        ),
        landmark_rooms=rooms,
    )


# -------------------- Image generation capability --------------------
class ImageGenerationError(Exception):
    """Error raised when the image model call fails or returns no image."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class CapabilityUnavailable(ImageGenerationError):
    """The image generation capability is not bound (missing credentials)."""


ImageGenerator = Callable[[str, Dict[str, Any]], Awaitable[Any]]


def _decode_base64_data(b64_data: str) -> Optional[bytes]:
    if not b64_data:
        return None
    try:
        return base64.b64decode(b64_data, validate=True)
    except (binascii.Error, ValueError):
        pass
    try:
        padding = "=" * (-len(b64_data) % 4)
        return base64.b64decode(b64_data + padding, validate=False)
    except (binascii.Error, ValueError):
        return None


class WorkersAIClient:
    """Runs Workers AI text-to-image models through the Cloudflare REST API."""

    def __init__(
        self,
        account_id: str,
        api_token: str,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> None:
        self.account_id = account_id
        self._api_token = api_token
        self.timeout = timeout
        self.width = width
        self.height = height

    async def __call__(self, model: str, inputs: Dict[str, Any]) -> Union[bytes, Dict[str, bytes]]:
        url = WORKERS_AI_RUN_URL.format(account_id=self.account_id, model=model)
        body = dict(inputs)
        if self.width:
            body.setdefault("width", self.width)
        if self.height:
            body.setdefault("height", self.height)
        headers = {"Authorization": f"Bearer {self._api_token}", "Content-Type": "application/json"}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.post(url, headers=headers, json=body)
            if r.status_code != 200:
                raise ImageGenerationError(f"Workers AI returned HTTP {r.status_code}: {r.text}")
            content_type = (r.headers.get("content-type") or "").lower()
            if "application/json" not in content_type:
                return r.content
            data = r.json()

        # Base64 models answer {"result": {"image": "..."}}; binary models stream JPEG bytes.
        result = data.get("result") if isinstance(data, dict) else None
        encoded = result.get("image") if isinstance(result, dict) else None
        image = _decode_base64_data(encoded) if isinstance(encoded, str) else None
        if not image:
            raise ImageGenerationError("No image data returned by model.")
        return {"image": image}


def build_image_generator(config: ServiceConfig) -> Optional[ImageGenerator]:
    if not config.cloudflare_account_id or not config.cloudflare_api_token:
        return None
    return WorkersAIClient(
        config.cloudflare_account_id,
        config.cloudflare_api_token,
        timeout=config.request_timeout_seconds,
        width=config.image_width,
        height=config.image_height,
    )


def _extract_image_bytes(result: Any) -> bytes:
    if isinstance(result, Mapping):
        result = result.get("image")
    if isinstance(result, (bytes, bytearray, memoryview)) and len(result):
        return bytes(result)
    raise ImageGenerationError("Image generator returned no image data.")


def _describe_exception(exc: BaseException) -> str:
    text = str(exc).strip()
    if text and text.lower() != exc.__class__.__name__.lower():
        return text
    return exc.__class__.__name__


# -------------------- Edge cache --------------------
@dataclass(frozen=True)
class CachedImage:
    body: bytes
    content_type: str = IMAGE_MEDIA_TYPE


class MemoryImageCache:
    """In-process LRU of generated images, capped at *max_entries*."""

    def __init__(self, max_entries: int = DEFAULT_CACHE_MAX_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be positive, got {max_entries!r}")
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, CachedImage]" = OrderedDict()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def match(self, key: str) -> Optional[CachedImage]:
        image = self._entries.get(key)
        if image is not None:
            self._entries.move_to_end(key)
        return image

    async def put(self, key: str, image: CachedImage) -> None:
        self._entries[key] = image
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)


class DiskImageCache:
    """One JPEG file per cache key, named by the key's SHA-256 digest."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{sha256_hex(key)}.jpg"

    async def match(self, key: str) -> Optional[CachedImage]:
        path = self.path_for(key)
        try:
            body = await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None
        except OSError as exc:
            print(f"Image cache read failed for {path.name}: {exc!r}", file=sys.stderr, flush=True)
            return None
        if not body:
            return None
        return CachedImage(body=body)

    async def put(self, key: str, image: CachedImage) -> None:
        await asyncio.to_thread(self._write_atomic, self.path_for(key), image.body)

    @staticmethod
    def _write_atomic(path: Path, body: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".pending_", suffix=".jpg")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(body)
            os.replace(tmp_name, path)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise


ImageCache = Union[MemoryImageCache, DiskImageCache]


def build_image_cache(config: ServiceConfig) -> ImageCache:
    if not config.cache_dir:
        return MemoryImageCache(config.cache_max_entries)
    directory = Path(config.cache_dir)
    if not directory.is_absolute():
        directory = APP_DIR / directory
    return DiskImageCache(directory)


def normalize_cache_key(method: str, path: str, params: Iterable[Tuple[str, str]]) -> str:
    """Request identity used as the cache key: method, path and every query pair (sorted)."""
    pairs = sorted((str(name), str(value)) for name, value in params)
    return f"{method.upper()} {path}?{urlencode(pairs)}"


# -------------------- Runtime state --------------------
@dataclass
class ServiceState:
    config: ServiceConfig = field(default_factory=ServiceConfig)
    cache: ImageCache = field(default_factory=MemoryImageCache)
    generator: Optional[ImageGenerator] = None


def build_service_state(config: ServiceConfig) -> ServiceState:
    return ServiceState(
        config=config,
        cache=build_image_cache(config),
        generator=build_image_generator(config),
    )


service_state = build_service_state(build_config(load_settings()))

T = TypeVar("T")
_BACKGROUND_TASKS: Set["asyncio.Task[Any]"] = set()


def _spawn(coro: Coroutine[Any, Any, T]) -> "asyncio.Task[T]":
    """Start *coro* detached from the calling request, keeping a reference until it finishes."""
    task = asyncio.create_task(coro)
    _BACKGROUND_TASKS.add(task)
    task.add_done_callback(_BACKGROUND_TASKS.discard)
    return task


async def drain_background_tasks() -> None:
    """Wait for detached work started on the running loop (cache writes, shielded generations)."""
    loop = asyncio.get_running_loop()
    while True:
        pending = [task for task in _BACKGROUND_TASKS if not task.done() and task.get_loop() is loop]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)


# -------------------- Scene rendering --------------------
@dataclass(frozen=True)
class SceneRequest:
    room: str
    state: str
    seed_token: str

    @classmethod
    def from_params(
        cls,
        room: Optional[str],
        state: Optional[str],
        seed: Optional[str],
        *,
        default_room: str = "",
    ) -> "SceneRequest":
        room_name = (room or default_room).strip()
        return cls(
            room=room_name,
            state=(state or "").strip(),
            seed_token=(seed or "").strip() or room_name,
        )


async def _store_in_cache(cache: ImageCache, cache_key: str, image: CachedImage) -> None:
    try:
        await cache.put(cache_key, image)
    except Exception as exc:  # noqa: BLE001
        print(f"Image cache write failed: {exc!r}", file=sys.stderr, flush=True)


async def _generate_and_store(
    scene: SceneRequest,
    cache_key: str,
    generator: ImageGenerator,
    config: ServiceConfig,
    cache: ImageCache,
) -> CachedImage:
    st = parse_state(scene.state)
    prompt = compose_prompt(scene.room, st, config.landmark_rooms)
    seed = seed_from_text(seed_key(scene.room, scene.state, scene.seed_token, config.landmark_rooms))
    try:
        result = await generator(config.image_model, {"prompt": prompt, "seed": seed})
        image = CachedImage(body=_extract_image_bytes(result))
    except ImageGenerationError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise ImageGenerationError(_describe_exception(exc)) from exc
    _spawn(_store_in_cache(cache, cache_key, image))
    return image


async def render_scene_image(scene: SceneRequest, cache_key: str) -> CachedImage:
    """Serve *scene* from the cache or generate it, storing fresh bytes in the background.

    Generation runs in its own task so a disconnecting client cannot cancel it;
    the result is still cached for the next identical request. Failures are
    never cached.
    """
    cache = service_state.cache
    cached = await cache.match(cache_key)
    if cached is not None:
        return cached
    generator = service_state.generator
    if generator is None:
        raise CapabilityUnavailable(
            "Image generation capability is not configured (set CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN)."
        )
    task = _spawn(_generate_and_store(scene, cache_key, generator, service_state.config, cache))
    return await asyncio.shield(task)


def _encode_uri_component(value: str) -> str:
    return quote(value, safe="!~*'()")


def canonical_image_url(base_url: str, image_id: str, scene: SceneRequest, version: str = "") -> str:
    url = (
        f"{base_url.rstrip('/')}/api/image/{image_id}.jpg"
        f"?room={_encode_uri_component(scene.room)}"
        f"&state={_encode_uri_component(scene.state)}"
        f"&seed={_encode_uri_component(scene.seed_token)}"
    )
    if version:
        url += f"&v={_encode_uri_component(version)}"
    return url


# -------------------- FastAPI app --------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    config = service_state.config
    logger = logging.getLogger("uvicorn.error")
    logger.info(
        "%s using %s (%s, %d landmark rooms)",
        config.service_name,
        config.image_model,
        "generator bound" if service_state.generator is not None else "no generator bound",
        len(config.landmark_rooms),
    )
    yield
    await drain_background_tasks()


app = FastAPI(title="Gothic Chronicle Images", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(service_state.config.allowed_origins),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=86400,
)


def _format_validation_errors(errors: Iterable[Mapping[str, Any]]) -> str:
    messages = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "invalid value")
        messages.append(f"{location}: {message}" if location else str(message))
    return "; ".join(messages)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Any method + path pair without a route is simply not found, including a known path with the wrong method.
    if exc.status_code in (404, 405):
        return JSONResponse({"ok": False, "error": "Not found"}, status_code=404)
    payload: Dict[str, Any] = {"ok": False}
    if isinstance(exc.detail, Mapping):
        payload.update(exc.detail)
    else:
        payload["error"] = str(exc.detail)
    return JSONResponse(payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        {"ok": False, "error": "Invalid request", "detail": _format_validation_errors(exc.errors())},
        status_code=400,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    print(f"Unhandled error on {request.url.path}: {exc!r}", file=sys.stderr, flush=True)
    return JSONResponse(
        {"ok": False, "error": "Internal error", "detail": _describe_exception(exc)},
        status_code=500,
    )


@app.get("/", response_class=PlainTextResponse)
async def index() -> PlainTextResponse:
    return PlainTextResponse("Hello World!")


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {"ok": True, "service": service_state.config.service_name, "ts": int(time.time() * 1000)}


@app.get("/image")
async def image_redirect(
    request: Request,
    room: Optional[str] = None,
    state: Optional[str] = None,
    seed: Optional[str] = None,
    v: Optional[str] = None,
) -> RedirectResponse:
    scene = SceneRequest.from_params(room, state, seed)
    if not scene.room:
        raise HTTPException(status_code=400, detail="Missing ?room=")
    version = (v or "").strip()
    # Seed participates so image ids differ across seeds too.
    payload: Dict[str, Any] = {
        "room": scene.room,
        "state": scene.state,
        "seed": scene.seed_token,
        "w": DEFAULT_IMAGE_SIZE,
        "h": DEFAULT_IMAGE_SIZE,
    }
    if version:
        payload["v"] = version
    location = canonical_image_url(str(request.base_url), image_id_for(payload), scene, version)
    return RedirectResponse(location, status_code=302)


class GenerateBody(BaseModel):
    prompt: str
    seed: Optional[Union[int, float, str]] = None
    w: Optional[int] = None
    h: Optional[int] = None


@app.post("/api/generate")
async def api_generate(request: Request) -> Dict[str, Any]:
    try:
        raw = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON") from exc
    if not isinstance(raw, dict) or not raw.get("prompt"):
        raise HTTPException(status_code=400, detail="Missing prompt")
    try:
        body = GenerateBody.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid request", "detail": _format_validation_errors(exc.errors())},
        ) from exc
    payload = {
        "prompt": body.prompt,
        "seed": body.seed if body.seed is not None else 0,
        "w": body.w if body.w is not None else DEFAULT_IMAGE_SIZE,
        "h": body.h if body.h is not None else DEFAULT_IMAGE_SIZE,
    }
    image_id = image_id_for(payload)
    base = str(request.base_url).rstrip("/")
    return {"ok": True, "imageId": image_id, "url": f"{base}/api/image/{image_id}.jpg"}


@app.get("/api/image/{image_id}.jpg")
async def api_image(
    image_id: str,
    request: Request,
    room: Optional[str] = None,
    state: Optional[str] = None,
    seed: Optional[str] = None,
) -> Response:
    # image_id is a caller-visible label only; inputs always come from the query.
    scene = SceneRequest.from_params(room, state, seed, default_room=service_state.config.default_room)
    cache_key = normalize_cache_key("GET", request.url.path, request.query_params.multi_items())
    try:
        image = await render_scene_image(scene, cache_key)
    except CapabilityUnavailable as exc:
        print(f"Image generation unavailable: {exc.message}", file=sys.stderr, flush=True)
        raise HTTPException(
            status_code=500,
            detail={"error": "Image generation unavailable", "detail": exc.message, "hasAI": False},
        ) from exc
    except ImageGenerationError as exc:
        print(f"Image generation failed for room {scene.room!r}: {exc.message}", file=sys.stderr, flush=True)
        raise HTTPException(
            status_code=500,
            detail={"error": "Image generation failed", "detail": exc.message, "hasAI": True},
        ) from exc
    return Response(
        content=image.body,
        media_type=image.content_type,
        headers={"Cache-Control": IMAGE_CACHE_CONTROL},
    )


if __name__ == "__main__":
    # Provide a convenient CLI entry point for local running.
    import uvicorn

    uvicorn.run(
        "chronicle:app",
        host=os.environ.get("CHRONICLE_HOST", "127.0.0.1"),
        port=int(os.environ.get("CHRONICLE_PORT", "8787")),
        reload=os.environ.get("CHRONICLE_RELOAD") == "1",
    )
