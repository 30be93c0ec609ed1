from __future__ import annotations

import httpx
import structlog

from .cnbc_adapter import CnbcAdapter
from .fmp_adapter import FmpAdapter
from .yahoo_adapter import YahooChartAdapter

log = structlog.get_logger()


def build_providers(cfg, client: httpx.AsyncClient | None = None) -> list:
    """Adapters in ``cfg.providers`` order. Disabled or unkeyed vendors are skipped."""
    out = []
    for name in cfg.providers:
        if name == "yahoo":
            if not cfg.yahoo_enable:
                continue
            out.append(YahooChartAdapter(cfg.yahoo_base_url, timeout=cfg.http_timeout_seconds, client=client))
        elif name == "fmp":
            if not cfg.fmp_api_key:
                log.info("provider_skipped", provider=name, reason="missing_api_key")
                continue
            out.append(FmpAdapter(cfg.fmp_api_key, cfg.fmp_base_url, timeout=cfg.http_timeout_seconds, client=client))
        elif name == "cnbc":
            if not cfg.cnbc_enable:
                continue
            out.append(CnbcAdapter(cfg.cnbc_base_url, timeout=cfg.http_timeout_seconds, client=client))
        else:
            log.warning("provider_unknown", provider=name)
    return out
