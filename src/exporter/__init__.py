"""Fitbit → Prometheus exporter core.

This package polls the Fitbit Web API for one user, normalizes the responses
into gauge samples, keeps the latest value per series in memory and renders
them for Prometheus scrapes.  Historical ranges can be imported on demand.

Subpackages:
    sync/ — Fixed-rate poll scheduler and chunked historical backfill

Core modules:
    base          — Value types (Credential, UpstreamRequest, MetricSample, ...)
    errors        — Exception taxonomy
    resources     — Catalogue of Fitbit endpoints
    auth          — OAuth2 credential manager (single-flight refresh)
    retry         — Backoff policy and rate-limit header parsing
    client        — Authenticated, retrying upstream client
    mapper        — Pure record → sample mapping and unit normalization
    store         — Copy-on-write latest-value store
    exposition    — prometheus_client collector and renderers
    config_loader — Load/validate/hot-reload exporter_config.yaml
    runtime       — Wires the above together for the app and the CLI
"""

from src.exporter.base import Credential, MetricSample, RawRecord, UpstreamRequest
from src.exporter.config_loader import ExporterConfig, get_exporter_config

__all__ = [
    "Credential",
    "MetricSample",
    "RawRecord",
    "UpstreamRequest",
    "ExporterConfig",
    "get_exporter_config",
]
