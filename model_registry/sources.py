"""
Entity sources
==============

An EntitySource yields normalized records::

    {"provider": str, "id": str, "created": int | None,
     "capabilities": [str, ...], "metadata": {...}}

The ecosystem aggregate (size of the whole upstream catalog) is a different
contract, EcosystemSource, and never flows through reconciliation.

Provider sources poll each vendor's model listing with requests; the blocking
call runs in a worker thread so the event loop keeps serving other sources.
Capabilities come only from structured listing fields.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import re
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

import requests

from .util import parse_timestamp

logger = logging.getLogger(__name__)


class EntitySource(abc.ABC):
    name: str = "unknown"

    @abc.abstractmethod
    def records(self) -> AsyncIterator[Dict[str, Any]]:
        """Lazy, finite stream of normalized records (an async generator)."""


class EcosystemSource(abc.ABC):
    name: str = "ecosystem"

    @abc.abstractmethod
    async def total_models(self) -> Optional[int]:
        """Size of the whole upstream catalog, or None when unknown."""


class StaticSource(EntitySource):
    """Fixed batch of records (fixtures, imports, CLI replays)."""

    def __init__(self, name: str, records: Iterable[Dict[str, Any]]):
        self.name = name
        self._records = list(records)

    async def records(self) -> AsyncIterator[Dict[str, Any]]:
        for r in self._records:
            yield r


class StaticEcosystemSource(EcosystemSource):
    def __init__(self, total: Optional[int], name: str = "ecosystem"):
        self.name = name
        self.total = total

    async def total_models(self) -> Optional[int]:
        return self.total


# =============================================================================
# Structured capability + metadata extraction
# =============================================================================

KNOWN_CAPABILITIES = {"reasoning", "code", "vision", "audio", "tools", "embeddings", "streaming"}


def structured_capabilities(raw_model: Dict[str, Any]) -> List[str]:
    caps = set()
    for c in raw_model.get("capabilities") or []:
        if isinstance(c, str) and c.lower() in KNOWN_CAPABILITIES:
            caps.add(c.lower())
    # OpenRouter: architecture.input_modalities + supported_parameters
    arch = raw_model.get("architecture") or {}
    modalities = arch.get("input_modalities") or []
    if "image" in modalities:
        caps.add("vision")
    if "audio" in modalities:
        caps.add("audio")
    params = raw_model.get("supported_parameters") or []
    if "tools" in params:
        caps.add("tools")
    if "reasoning" in params or "include_reasoning" in params:
        caps.add("reasoning")
    # Google: generation methods + thinking flag
    methods = raw_model.get("supportedGenerationMethods") or []
    if "embedContent" in methods:
        caps.add("embeddings")
    if "streamGenerateContent" in methods:
        caps.add("streaming")
    if raw_model.get("thinking") is True:
        caps.add("reasoning")
    return sorted(caps)


def cost_class(pricing: Any) -> Optional[str]:
    """OpenRouter per-token prompt price -> coarse class, in USD per million tokens."""
    if not isinstance(pricing, dict) or "prompt" not in pricing:
        return None
    try:
        per_million = float(pricing["prompt"]) * 1_000_000
    except (ValueError, TypeError):
        return None
    if per_million == 0:
        return "free"
    if per_million < 0.5:
        return "low"
    if per_million < 3.0:
        return "mid"
    if per_million < 15.0:
        return "high"
    return "premium"


def structured_metadata(raw_model: Dict[str, Any], source: str) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"source": source}
    if "context_length" in raw_model:
        meta["context_length"] = raw_model["context_length"]
    if "inputTokenLimit" in raw_model:
        meta["context_length"] = raw_model["inputTokenLimit"]
    if "outputTokenLimit" in raw_model:
        meta["max_output_tokens"] = raw_model["outputTokenLimit"]
    cc = cost_class(raw_model.get("pricing"))
    if cc:
        meta["cost_class"] = cc
    for field_name in ("display_name", "displayName", "owned_by", "description"):
        value = raw_model.get(field_name)
        if isinstance(value, str) and value:
            meta[field_name] = value
    return meta


# =============================================================================
# Provider sources
# =============================================================================

class ProviderSource(EntitySource):
    """Polls a provider's model listing. Subclasses implement poll_models()
    (blocking HTTP) and list_models() (raw payload -> (model_id, created, raw))."""

    def __init__(self, name: str, timeout_s: int = 30):
        self.name = name
        self.timeout_s = timeout_s

    def poll_models(self) -> Dict[str, Any]:
        raise NotImplementedError

    def list_models(self, raw: Dict[str, Any]) -> List[Tuple[str, Optional[int], Dict[str, Any]]]:
        raise NotImplementedError

    def to_record(self, model_id: str, created: Optional[int],
                  raw_model: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "provider": self.name,
            "id": model_id,
            "created": created,
            "capabilities": structured_capabilities(raw_model),
            "metadata": structured_metadata(raw_model, source=f"{self.name.lower()}-api"),
        }

    async def records(self) -> AsyncIterator[Dict[str, Any]]:
        raw = await asyncio.to_thread(self.poll_models)
        models = self.list_models(raw)
        logger.info("%s: %d model(s) listed", self.name, len(models))
        for model_id, created, raw_model in models:
            yield self.to_record(model_id, created, raw_model)


class OpenAICompatSource(ProviderSource):
    """Any endpoint following the /models convention with Bearer auth:
    OpenAI, xAI, Mistral, DeepSeek, OpenRouter, Venice, Moonshot, ..."""

    def __init__(self, name: str, api_key: str, base_url: str,
                 models_path: str = "/v1/models", timeout_s: int = 30):
        super().__init__(name, timeout_s=timeout_s)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.models_path = models_path

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def poll_models(self) -> Dict[str, Any]:
        r = requests.get(f"{self.base_url}{self.models_path}", headers=self._headers(),
                         timeout=self.timeout_s)
        r.raise_for_status()
        return r.json()

    def list_models(self, raw: Dict[str, Any]) -> List[Tuple[str, Optional[int], Dict[str, Any]]]:
        data = raw.get("data", raw.get("models", []))
        if isinstance(data, dict):
            data = [data]
        out = []
        for m in data:
            if not isinstance(m, dict):
                continue
            mid = m.get("id") or m.get("model_id")
            if not mid:
                continue
            created = m.get("created")
            out.append((mid, created if isinstance(created, int) else None, m))
        return out


class AnthropicSource(ProviderSource):
    """Anthropic /v1/models. When the listing call fails, the last good
    listing is reused, then a seed list of known model ids."""

    KNOWN_MODELS = [
        "claude-opus-4-6",
        "claude-opus-4-5-20250929",
        "claude-sonnet-4-5-20250929",
        "claude-haiku-4-5-20251001",
        "claude-3-5-haiku-20241022",
    ]

    def __init__(self, api_key: str, timeout_s: int = 30):
        super().__init__("Anthropic", timeout_s=timeout_s)
        self.api_key = api_key
        self.base_url = "https://api.anthropic.com"
        self._cached_listing: Optional[Dict[str, Any]] = None

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
            "content-type": "application/json",
        }

    def poll_models(self) -> Dict[str, Any]:
        try:
            r = requests.get(f"{self.base_url}/v1/models", headers=self._headers(),
                             params={"limit": 1000}, timeout=self.timeout_s)
            r.raise_for_status()
            listing = r.json()
            self._cached_listing = listing
            return listing
        except requests.RequestException as e:
            logger.warning("Anthropic: listing failed (%s), using fallback", e)

        if self._cached_listing:
            return self._cached_listing
        return {"data": [{"id": mid, "source": "known_list"} for mid in self.KNOWN_MODELS]}

    def list_models(self, raw: Dict[str, Any]) -> List[Tuple[str, Optional[int], Dict[str, Any]]]:
        out = []
        for m in raw.get("data", []):
            mid = m.get("id")
            if not mid:
                continue
            created_at = parse_timestamp(m.get("created_at"))
            out.append((mid, int(created_at.timestamp()) if created_at else None, m))
        return out


class GoogleSource(ProviderSource):
    def __init__(self, api_key: str, timeout_s: int = 30):
        super().__init__("Google", timeout_s=timeout_s)
        self.api_key = api_key
        self.base_url = "https://generativelanguage.googleapis.com"

    def poll_models(self) -> Dict[str, Any]:
        r = requests.get(f"{self.base_url}/v1beta/models", params={"key": self.api_key},
                         timeout=self.timeout_s)
        r.raise_for_status()
        return r.json()

    def list_models(self, raw: Dict[str, Any]) -> List[Tuple[str, Optional[int], Dict[str, Any]]]:
        out = []
        for m in raw.get("models", []):
            # "models/gemini-2.0-flash" -> "gemini-2.0-flash"
            mid = m.get("name", "")
            if mid.startswith("models/"):
                mid = mid[7:]
            if mid:
                out.append((mid, None, m))
        return out


class OllamaSource(ProviderSource):
    """Local Ollama instance; no auth."""

    def __init__(self, base_url: str = "http://localhost:11434", timeout_s: int = 15):
        super().__init__("Ollama", timeout_s=timeout_s)
        self.base_url = base_url.rstrip("/")

    def poll_models(self) -> Dict[str, Any]:
        r = requests.get(f"{self.base_url}/api/tags", timeout=self.timeout_s)
        r.raise_for_status()
        return r.json()

    def list_models(self, raw: Dict[str, Any]) -> List[Tuple[str, Optional[int], Dict[str, Any]]]:
        out = []
        for m in raw.get("models", []):
            mid = m.get("name") or m.get("model")
            if mid:
                out.append((mid, None, m))
        return out


# =============================================================================
# Provider factory
# =============================================================================

SourceFactory = Callable[[Optional[str]], ProviderSource]

PROVIDER_REGISTRY: Dict[str, Tuple[Optional[str], SourceFactory]] = {
    "openai":     ("OPENAI_API_KEY",     lambda k: OpenAICompatSource("OpenAI", k, os.environ.get("OPENAI_BASE_URL", "https://api.openai.com"))),
    "anthropic":  ("ANTHROPIC_API_KEY",  lambda k: AnthropicSource(api_key=k)),
    "google":     ("GOOGLE_API_KEY",     lambda k: GoogleSource(api_key=k)),
    "xai":        ("XAI_API_KEY",        lambda k: OpenAICompatSource("xAI", k, "https://api.x.ai")),
    "mistral":    ("MISTRAL_API_KEY",    lambda k: OpenAICompatSource("Mistral", k, "https://api.mistral.ai")),
    "deepseek":   ("DEEPSEEK_API_KEY",   lambda k: OpenAICompatSource("DeepSeek", k, "https://api.deepseek.com", models_path="/models")),
    "openrouter": ("OPENROUTER_API_KEY", lambda k: OpenAICompatSource("OpenRouter", k, "https://openrouter.ai/api")),
    "venice":     ("VENICE_API_KEY",     lambda k: OpenAICompatSource("Venice", k, "https://api.venice.ai", models_path="/api/v1/models")),
    "moonshot":   ("MOONSHOT_API_KEY",   lambda k: OpenAICompatSource("Moonshot", k, "https://api.moonshot.cn")),
    "ollama":     (None,                 lambda _: OllamaSource(base_url=os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434"))),
}


def ollama_reachable(base_url: str) -> bool:
    try:
        requests.get(f"{base_url}/api/tags", timeout=3)
        return True
    except requests.RequestException:
        return False


def build_sources(requested: Optional[List[str]] = None) -> List[EntitySource]:
    """Sources for every provider that has credentials configured."""
    sources: List[EntitySource] = []
    targets = requested or list(PROVIDER_REGISTRY.keys())

    for name in targets:
        if name not in PROVIDER_REGISTRY:
            logger.warning("Unknown provider: %s, skipping", name)
            continue

        env_var, factory = PROVIDER_REGISTRY[name]

        if env_var is None:
            source = factory(None)
            if ollama_reachable(source.base_url):
                sources.append(source)
            else:
                logger.info("ollama: not reachable at %s", source.base_url)
            continue

        key = os.environ.get(env_var, "").strip()
        if not key:
            if requested:
                logger.info("%s: %s not set, skipping", name, env_var)
            continue

        sources.append(factory(key))

    return sources


# =============================================================================
# Ecosystem aggregate
# =============================================================================

_HF_PRIMARY = re.compile(r"Models\s+(\d{1,3}(?:,\d{3})+)", re.IGNORECASE)
_HF_BACKUP = [
    re.compile(r"(\d{1,3}(?:,\d{3})+)\s+models", re.IGNORECASE),
    re.compile(r"models:\s*(\d{1,3}(?:,\d{3})+)", re.IGNORECASE),
]


def parse_catalog_total(page_text: str) -> Optional[int]:
    """Pull the catalog size out of the models page ("Models 1,854,145")."""
    for pattern in [_HF_PRIMARY] + _HF_BACKUP:
        match = pattern.search(page_text)
        if match:
            return int(match.group(1).replace(",", ""))
    return None


class HuggingFaceEcosystemSource(EcosystemSource):
    """Size of the public Hugging Face catalog, scraped from the models page.

    Returns None when the page cannot be fetched or parsed; the snapshot
    guard decides whether a parsed number is plausible.
    """

    def __init__(self, url: str = "https://huggingface.co/models", timeout_s: int = 30):
        self.name = "HuggingFace"
        self.url = url
        self.timeout_s = timeout_s

    def fetch_page(self) -> str:
        r = requests.get(self.url, headers={"Accept": "text/html"}, timeout=self.timeout_s)
        r.raise_for_status()
        return r.text

    async def total_models(self) -> Optional[int]:
        try:
            page = await asyncio.to_thread(self.fetch_page)
        except requests.RequestException as e:
            logger.warning("Ecosystem scrape failed: %s", e)
            return None
        total = parse_catalog_total(page)
        if total is None:
            logger.warning("Ecosystem scrape: no model count found on %s", self.url)
        else:
            logger.info("Ecosystem scrape: %s total models", f"{total:,}")
        return total


def build_ecosystem_source(static_total: Optional[int] = None) -> EcosystemSource:
    if static_total is not None:
        return StaticEcosystemSource(static_total)
    return HuggingFaceEcosystemSource()
