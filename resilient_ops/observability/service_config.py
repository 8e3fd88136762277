"""
Service Configuration
=====================
Static enumeration of external dependencies and whether each is usable.

A service is enabled when all of its credential variables are present.
Health and alert tooling read this map; nothing writes to it at runtime.
"""

import os
from typing import Dict, Any, Mapping, Optional, Tuple
from dataclasses import dataclass, asdict


@dataclass(frozen=True)
class ServiceSpec:
    """Catalogue entry for one external service."""
    name: str
    credential_vars: Tuple[str, ...]
    critical: bool
    purpose: str


@dataclass(frozen=True)
class ServiceConfig:
    """Resolved configuration for one service."""
    enabled: bool
    critical: bool
    purpose: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


SERVICE_CATALOG: Tuple[ServiceSpec, ...] = (
    ServiceSpec("supabase", ("SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"), True, "Primary database API"),
    ServiceSpec("anthropic", ("ANTHROPIC_API_KEY",), True, "Image identification and diagnosis"),
    ServiceSpec("perplexity", ("PERPLEXITY_API_KEY",), True, "Design generation with real-time search"),
    ServiceSpec("gemini", ("GEMINI_API_KEY",), False, "Recommendations and scheduling"),
    ServiceSpec("perenual", ("PERENUAL_API_KEY",), False, "Reference database and care information"),
    ServiceSpec("gbif", ("GBIF_EMAIL", "GBIF_PASSWORD"), False, "Biodiversity and species data"),
    ServiceSpec("mapbox", ("MAPBOX_API_KEY",), False, "Geocoding and location services"),
    ServiceSpec("visual_crossing", ("VISUAL_CROSSING_API_KEY",), False, "Climate and weather data"),
    ServiceSpec("huggingface", ("HUGGINGFACE_API_KEY",), False, "Image generation"),
    ServiceSpec("runware", ("RUNWARE_API_KEY",), False, "Advanced visualizations"),
    ServiceSpec("stripe", ("STRIPE_SECRET_KEY",), True, "Payment processing"),
    ServiceSpec("firecrawl", ("FIRECRAWL_API_KEY",), False, "Web scraping and crawling"),
)


def build_service_configuration(
    env: Optional[Mapping[str, str]] = None,
    catalog: Tuple[ServiceSpec, ...] = SERVICE_CATALOG,
) -> Dict[str, ServiceConfig]:
    """
    Resolve the catalogue against an environment.

    Example:
        config = build_service_configuration()
        if config["stripe"].enabled:
            ...
    """
    env = os.environ if env is None else env
    return {
        spec.name: ServiceConfig(
            enabled=all(env.get(var) for var in spec.credential_vars),
            critical=spec.critical,
            purpose=spec.purpose,
        )
        for spec in catalog
    }


def enabled_services(config: Mapping[str, ServiceConfig]) -> Dict[str, ServiceConfig]:
    return {name: svc for name, svc in config.items() if svc.enabled}


__all__ = [
    'ServiceSpec',
    'ServiceConfig',
    'SERVICE_CATALOG',
    'build_service_configuration',
    'enabled_services',
]
