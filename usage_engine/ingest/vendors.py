"""Vendor canonicalization for OTLP telemetry.

Maps flattened resource + span attributes onto a stable vendor identity using
an ordered rule table: explicit runtime/SDK/service matches first, then
``gen_ai.*`` provider detection, then a slug of ``service.name``. Everything
here is pure so it can be exercised against fixed attribute maps.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Sequence

from usage_engine.core.config import VendorAlias

LLM_CATEGORY = "llm"

Attributes = Mapping[str, str]


@dataclass(frozen=True)
class VendorInfo:
    vendor: str
    display_name: str
    category: str | None
    is_llm: bool = False


@dataclass(frozen=True)
class Rule:
    name: str
    match: Callable[[Attributes], bool]
    resolve: Callable[[Attributes], VendorInfo]


_LLM_PROVIDERS: dict[str, str] = {
    "anthropic": "Anthropic (Claude)",
    "openai": "OpenAI",
    "openrouter": "OpenRouter",
    "google": "Google Gemini",
    "mistral": "Mistral AI",
    "cohere": "Cohere",
    "meta": "Meta Llama",
    "deepseek": "DeepSeek",
    "xai": "xAI Grok",
    "aws-bedrock": "AWS Bedrock",
    "azure-openai": "Azure OpenAI",
}

# gen_ai.system values seen in the wild -> canonical provider slug.
_SYSTEM_ALIASES: dict[str, str] = {
    "anthropic": "anthropic",
    "claude": "anthropic",
    "openai": "openai",
    "openrouter": "openrouter",
    "gemini": "google",
    "google": "google",
    "vertex_ai": "google",
    "gcp.gemini": "google",
    "gcp.vertex_ai": "google",
    "mistral_ai": "mistral",
    "mistral": "mistral",
    "cohere": "cohere",
    "meta": "meta",
    "deepseek": "deepseek",
    "xai": "xai",
    "aws.bedrock": "aws-bedrock",
    "az.ai.openai": "azure-openai",
    "azure.ai.openai": "azure-openai",
}

# Ordered: first prefix match wins.
_MODEL_PREFIXES: Sequence[tuple[str, str]] = (
    ("claude", "anthropic"),
    ("gpt", "openai"),
    ("chatgpt", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("o4", "openai"),
    ("text-embedding", "openai"),
    ("dall-e", "openai"),
    ("whisper", "openai"),
    ("gemini", "google"),
    ("palm", "google"),
    ("mistral", "mistral"),
    ("mixtral", "mistral"),
    ("codestral", "mistral"),
    ("command", "cohere"),
    ("llama", "meta"),
    ("deepseek", "deepseek"),
    ("grok", "xai"),
)

# SDK / service-name fragments for LLM providers.
_LLM_SERVICE_FRAGMENTS: Sequence[tuple[str, str]] = (
    ("openrouter", "openrouter"),
    ("anthropic", "anthropic"),
    ("openai", "openai"),
    ("gemini", "google"),
    ("mistral", "mistral"),
    ("cohere", "cohere"),
)

MODEL_ATTRIBUTE_KEYS = ("gen_ai.request.model", "gen_ai.response.model")


def _lower(attrs: Attributes, key: str) -> str:
    return (attrs.get(key) or "").lower()


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def title_from_slug(slug: str) -> str:
    return " ".join(part.capitalize() for part in re.split(r"[-_.\s]+", slug) if part)


def _llm_vendor(slug: str) -> VendorInfo:
    return VendorInfo(
        vendor=slug,
        display_name=_LLM_PROVIDERS.get(slug, title_from_slug(slug)),
        category=LLM_CATEGORY,
        is_llm=True,
    )


def provider_for_model(model: str | None) -> str | None:
    """Infer the provider slug from a model id such as ``gpt-4o`` or ``anthropic/claude-3``."""
    if not model:
        return None
    text = model.strip().lower()
    if "/" in text:
        prefix, _, rest = text.partition("/")
        if prefix in _LLM_PROVIDERS or prefix in _SYSTEM_ALIASES:
            return _SYSTEM_ALIASES.get(prefix, prefix)
        text = rest
    for prefix, provider in _MODEL_PREFIXES:
        if text.startswith(prefix):
            return provider
    return None


def strip_provider_prefix(model: str) -> str:
    """``openai/gpt-4o`` -> ``gpt-4o``."""
    return model.split("/", 1)[1] if "/" in model else model


def _service_rule(
    name: str,
    vendor: str,
    display_name: str,
    category: str | None,
    predicate: Callable[[Attributes], bool],
) -> Rule:
    info = VendorInfo(vendor, display_name, category, category == LLM_CATEGORY)
    return Rule(name=name, match=predicate, resolve=lambda _attrs: info)


def _is_cloudflare(attrs: Attributes) -> bool:
    if attrs.get("cloud.provider") == "cloudflare":
        return True
    if re.search(r"cloudflare|workers", _lower(attrs, "service.name")):
        return True
    return bool(attrs.get("faas.trigger"))


def _is_arcade(attrs: Attributes) -> bool:
    return "arcade" in _lower(attrs, "service.name") or "arcade" in _lower(attrs, "sdk.name")


def _is_vscode(attrs: Attributes) -> bool:
    exe = _lower(attrs, "process.executable.name")
    command = _lower(attrs, "process.command")
    return exe == "code" or command == "code" or command.endswith("/code")


def _is_cursor(attrs: Attributes) -> bool:
    return "cursor" in _lower(attrs, "service.name") or "cursor" in _lower(
        attrs, "process.executable.name"
    )


def _is_e2b(attrs: Attributes) -> bool:
    return "e2b" in _lower(attrs, "service.name")


def _llm_service_match(attrs: Attributes) -> str | None:
    names = (_lower(attrs, "service.name"), _lower(attrs, "telemetry.sdk.name"), _lower(attrs, "sdk.name"))
    for fragment, provider in _LLM_SERVICE_FRAGMENTS:
        if any(fragment in candidate for candidate in names):
            return provider
    return None


def has_gen_ai_attributes(attrs: Attributes) -> bool:
    return any(key.startswith("gen_ai.") for key in attrs)


def _gen_ai_provider(attrs: Attributes) -> str | None:
    system = _lower(attrs, "gen_ai.system") or _lower(attrs, "gen_ai.provider.name")
    if system:
        return _SYSTEM_ALIASES.get(system, slugify(system) or None)
    for key in MODEL_ATTRIBUTE_KEYS:
        provider = provider_for_model(attrs.get(key))
        if provider:
            return provider
    return None


def _resolve_gen_ai(attrs: Attributes) -> VendorInfo:
    provider = _gen_ai_provider(attrs)
    if provider:
        return _llm_vendor(provider)
    fallback = _fallback(attrs)
    return VendorInfo(fallback.vendor, fallback.display_name, LLM_CATEGORY, True)


def _fallback(attrs: Attributes) -> VendorInfo:
    slug = slugify(attrs.get("service.name") or "") or "unknown"
    return VendorInfo(vendor=slug, display_name=title_from_slug(slug), category=None)


BUILTIN_RULES: Sequence[Rule] = (
    _service_rule("cloudflare", "cloudflare-workers", "Cloudflare Workers", "runtime", _is_cloudflare),
    _service_rule("arcade", "arcade", "Arcade Dev", "tool-server", _is_arcade),
    _service_rule("vscode", "vscode", "VS Code", "ide", _is_vscode),
    _service_rule("cursor", "cursor", "Cursor", "ide", _is_cursor),
    _service_rule("e2b", "e2b", "E2B Sandbox", "sandbox", _is_e2b),
    Rule(
        name="llm-sdk",
        match=lambda attrs: _llm_service_match(attrs) is not None,
        resolve=lambda attrs: _llm_vendor(_llm_service_match(attrs) or "unknown"),
    ),
    Rule(name="gen-ai", match=has_gen_ai_attributes, resolve=_resolve_gen_ai),
)


def alias_rules(aliases: Iterable[VendorAlias]) -> list[Rule]:
    """Build service-name rules from configured aliases."""
    rules: list[Rule] = []
    for alias in aliases:
        fragment = alias.match.lower()
        rules.append(
            _service_rule(
                f"alias:{alias.vendor}",
                alias.vendor,
                alias.display_name,
                alias.category,
                lambda attrs, fragment=fragment: fragment in _lower(attrs, "service.name")
                or fragment in _lower(attrs, "telemetry.sdk.name"),
            )
        )
    return rules


class VendorCanonicalizer:
    """Ordered rule matcher; configured aliases take precedence over built-ins."""

    def __init__(self, aliases: Iterable[VendorAlias] = ()) -> None:
        self._rules: list[Rule] = [*alias_rules(aliases), *BUILTIN_RULES]

    def canonicalize(
        self,
        resource_attributes: Attributes,
        span_attributes: Attributes | None = None,
        service_name: str | None = None,
    ) -> VendorInfo:
        attrs: dict[str, str] = {**resource_attributes, **(span_attributes or {})}
        if service_name:
            attrs["service.name"] = service_name
        for rule in self._rules:
            if rule.match(attrs):
                info = rule.resolve(attrs)
                if not info.is_llm and is_llm_tool(attrs):
                    info = VendorInfo(info.vendor, info.display_name, info.category, True)
                return info
        return _fallback(attrs)


def model_of(attrs: Attributes) -> str | None:
    for key in MODEL_ATTRIBUTE_KEYS:
        if attrs.get(key):
            return attrs[key]
    return None


def is_llm_tool(attrs: Attributes, vendor: VendorInfo | None = None) -> bool:
    if vendor is not None and vendor.category == LLM_CATEGORY:
        return True
    return bool(attrs.get("gen_ai.system")) or any(attrs.get(key) for key in MODEL_ATTRIBUTE_KEYS)


def canonicalize_vendor(
    resource_attributes: Attributes,
    span_attributes: Attributes | None = None,
    service_name: str | None = None,
) -> VendorInfo:
    """Canonicalize with the built-in rule table only."""
    return _DEFAULT.canonicalize(resource_attributes, span_attributes, service_name)


_DEFAULT = VendorCanonicalizer()


__all__ = [
    "LLM_CATEGORY",
    "Rule",
    "VendorCanonicalizer",
    "VendorInfo",
    "canonicalize_vendor",
    "is_llm_tool",
    "model_of",
    "provider_for_model",
    "strip_provider_prefix",
]
