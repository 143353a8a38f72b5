"""
Latency probes across server profiles that share a prefix.
"""
import concurrent.futures
import math
from typing import Callable, Dict, List, Optional, Sequence

from logging_config import get_logger
from .client import CatalogClient
from .models import ServerProfile

logger = get_logger('probe')

UNREACHABLE = math.inf

PingFn = Callable[[ServerProfile], float]


def is_unreachable(latency: Optional[float]) -> bool:
    return latency is None or math.isinf(latency)


def make_pinger(timeout: float) -> PingFn:
    """Default probe: an unauthenticated request to the public info endpoint."""
    def ping(profile: ServerProfile) -> float:
        return CatalogClient(profile.url, timeout=timeout).ping()
    return ping


def matching_indices(profiles: Sequence[ServerProfile], prefix: str) -> List[int]:
    return [i for i, p in enumerate(profiles) if p.prefix == prefix]


def probe_group(profiles: Sequence[ServerProfile], prefix: str, ping: PingFn,
                max_workers: Optional[int] = None) -> Dict[int, float]:
    """Probe every profile whose prefix matches, all at once.

    Returns profile index -> latency in seconds for every matching profile.
    A probe that raises contributes ``UNREACHABLE``.
    """
    targets = matching_indices(profiles, prefix)
    if not targets:
        return {}

    results: Dict[int, float] = {}
    workers = max_workers or len(targets)
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(ping, profiles[i]): i for i in targets}
        for future in concurrent.futures.as_completed(futures):
            idx = futures[future]
            try:
                results[idx] = future.result()
            except Exception as e:
                logger.info(f"Probe of {profiles[idx].name!r} failed: {e}")
                results[idx] = UNREACHABLE

    logger.debug(f"Probed {len(results)} servers with prefix {prefix!r}")
    return results
