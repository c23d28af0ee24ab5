"""Proxy selection for outbound Poe traffic.

Resolution walks an ordered list of sources and the first non-empty value wins:
the explicitly configured URL, then the usual proxy environment variables
(https, http, all; upper case before lower case).
"""

import logging
import os
from typing import Callable, Mapping, Optional

logger = logging.getLogger(__name__)

PROXY_ENV_VARS: tuple[str, ...] = (
    "HTTPS_PROXY",
    "https_proxy",
    "HTTP_PROXY",
    "http_proxy",
    "ALL_PROXY",
    "all_proxy",
)

ProxySource = Callable[[], Optional[str]]


def proxy_sources(
    configured: Optional[str], environ: Optional[Mapping[str, str]] = None
) -> list[ProxySource]:
    env = os.environ if environ is None else environ
    sources: list[ProxySource] = [lambda: configured]
    for name in PROXY_ENV_VARS:
        sources.append(lambda name=name: env.get(name))
    return sources


def first_match(sources: list[ProxySource]) -> Optional[str]:
    for source in sources:
        value = source()
        if value and value.strip():
            return value.strip()
    return None


def resolve_proxy_url(
    configured: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """Return the proxy URL to use, or None to connect directly."""
    proxy_url = first_match(proxy_sources(configured, environ))
    if proxy_url:
        logger.info("Using proxy: %s", proxy_url)
    else:
        logger.warning("No proxy configured, requests may time out if a VPN/proxy is required")
    return proxy_url
