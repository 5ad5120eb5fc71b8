"""
Reqflow
UML Pipeline.

Validate, encode and render PlantUML source through a remote render
server, with an in-memory cache of rendered bytes.

Encoding for the server URL:
    1. zlib-compress the UTF-8 source (default level)
    2. base64 with the standard alphabet
    3. ``+`` → ``-``, ``/`` → ``_``, strip ``=`` padding

Request: GET <server>/<format>/<encoded>, format ∈ {png, svg, txt}.
"""

import base64
import logging
import zlib
from dataclasses import dataclass, field
from datetime import datetime

import requests

from reqflow.ai.entities import utcnow
from reqflow.core.cancellation import CancellationToken, check
from reqflow.core.exceptions import InvalidInput, RenderError, Unsupported
from reqflow.core.locks import RWLock

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://www.plantuml.com/plantuml"
_DEFAULT_TIMEOUT = 30  # seconds
RENDER_FORMATS = ("png", "svg", "txt")


# ── Validation ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"ok": self.ok, "errors": list(self.errors), "warnings": list(self.warnings)}


def validate(src: str) -> ValidationResult:
    """
    Lint PlantUML source.

    Errors: missing or repeated ``@startuml`` / ``@enduml``, unbalanced
    curly braces. Warnings: arrows that appear to lack a label. The
    result is advisory; rendering never requires ``ok``.
    """
    errors, warnings = [], []
    starts = ends = 0
    depth = 0

    for line_no, line in enumerate((src or "").splitlines(), start=1):
        stripped = line.strip()
        if stripped.startswith("@startuml"):
            starts += 1
            if starts > 1:
                errors.append(f"line {line_no}: duplicate @startuml")
        if stripped.startswith("@enduml"):
            ends += 1
            if ends > 1:
                errors.append(f"line {line_no}: duplicate @enduml")

        depth += stripped.count("{") - stripped.count("}")

        if ("->" in stripped and ":" not in stripped
                and "[" not in stripped and "participant" not in stripped):
            warnings.append(f"line {line_no}: arrow may be missing a label")

    if starts == 0:
        errors.append("missing @startuml")
    if ends == 0:
        errors.append("missing @enduml")
    if depth != 0:
        errors.append("unbalanced curly braces")

    return ValidationResult(ok=not errors, errors=errors, warnings=warnings)


# ── Encoding ─────────────────────────────────────────────────────────────────

def encode(src: str) -> str:
    compressed = zlib.compress(src.encode("utf-8"))
    encoded = base64.b64encode(compressed).decode("ascii")
    return encoded.replace("+", "-").replace("/", "_").rstrip("=")


def decode(encoded: str) -> str:
    """Inverse of ``encode``."""
    b64 = encoded.replace("-", "+").replace("_", "/")
    b64 += "=" * (-len(b64) % 4)
    return zlib.decompress(base64.b64decode(b64)).decode("utf-8")


# ── Rendering ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RenderOptions:
    format: str = "png"
    dpi: int = 0
    use_cache: bool = True
    server_mode: bool = True


@dataclass(frozen=True)
class RenderResult:
    image_data: bytes
    format: str
    url: str
    cache_key: str
    rendered_at: datetime
    from_cache: bool = False

    def to_dict(self) -> dict:
        return {
            "format": self.format,
            "url": self.url,
            "cache_key": self.cache_key,
            "rendered_at": self.rendered_at.isoformat(),
            "size": len(self.image_data),
            "from_cache": self.from_cache,
        }


def cache_key(src: str, fmt: str, dpi: int) -> str:
    return f"{base64.b64encode(src.encode('utf-8')).decode('ascii')}_{fmt}_{dpi}"


class UMLPipeline:
    """
    Render client for a PlantUML server.

    Args:
        server_url: Base URL of the render server.
        timeout: Request timeout in seconds.
        session: Injectable ``requests.Session`` (tests pass a mock).
        cache_enabled: Master switch for the render cache.
    """

    def __init__(self, server_url: str = DEFAULT_SERVER_URL, *, timeout: float = _DEFAULT_TIMEOUT,
                 session: requests.Session | None = None, cache_enabled: bool = True):
        self.server_url = (server_url or DEFAULT_SERVER_URL).rstrip("/")
        self.timeout = timeout
        self.cache_enabled = cache_enabled
        self._session = session or requests.Session()
        self._cache: dict[str, RenderResult] = {}
        self._lock = RWLock()

    validate = staticmethod(validate)

    def url_for(self, src: str, fmt: str = "png") -> str:
        """The GET URL that renders ``src`` as ``fmt``, without fetching it."""
        self._check_format(fmt)
        return f"{self.server_url}/{fmt}/{encode(src)}"

    def render(self, src: str, options: RenderOptions | None = None,
               token: CancellationToken | None = None) -> RenderResult:
        """
        Render ``src`` to image bytes.

        ``options.use_cache=False`` bypasses both the cache read and the
        cache write.

        Raises:
            InvalidInput: empty source or unknown format.
            Unsupported: local render mode.
            RenderError: non-2xx answer or unreachable server.
        """
        options = options or RenderOptions()
        if not src or not src.strip():
            raise InvalidInput("UML source must not be empty")
        self._check_format(options.format)
        if not options.server_mode:
            raise Unsupported("local UML rendering is not supported; use server mode")

        key = cache_key(src, options.format, options.dpi)
        use_cache = options.use_cache and self.cache_enabled
        if use_cache:
            with self._lock.read():
                cached = self._cache.get(key)
            if cached is not None:
                logger.debug("Render cache hit (%s)", options.format)
                return RenderResult(
                    image_data=cached.image_data, format=cached.format, url=cached.url,
                    cache_key=key, rendered_at=cached.rendered_at, from_cache=True,
                )

        url = self.url_for(src, options.format)
        check(token)
        try:
            resp = self._session.get(url, timeout=self.timeout)
        except requests.Timeout as exc:
            raise RenderError(None, f"render server timed out after {self.timeout}s") from exc
        except requests.ConnectionError as exc:
            raise RenderError(None, f"render server unreachable: {exc}") from exc
        check(token)

        if not 200 <= resp.status_code < 300:
            logger.warning("Render server returned HTTP %s", resp.status_code)
            raise RenderError(resp.status_code)

        result = RenderResult(
            image_data=resp.content,
            format=options.format,
            url=url,
            cache_key=key,
            rendered_at=utcnow(),
        )
        if use_cache:
            with self._lock.write():
                self._cache[key] = result
        logger.info("Rendered UML as %s (%d bytes)", options.format, len(result.image_data))
        return result

    def preview(self, src: str, token: CancellationToken | None = None) -> RenderResult:
        """SVG render that never touches the cache."""
        return self.render(src, RenderOptions(format="svg", use_cache=False), token=token)

    def cache_stats(self) -> dict:
        with self._lock.read():
            size = len(self._cache)
        return {"cache_size": size, "cache_enabled": self.cache_enabled}

    def clear_cache(self) -> int:
        with self._lock.write():
            count = len(self._cache)
            self._cache.clear()
        logger.info("Render cache cleared (%d entries)", count)
        return count

    @staticmethod
    def _check_format(fmt: str) -> None:
        if fmt not in RENDER_FORMATS:
            raise InvalidInput(f"unsupported render format: {fmt}")
