"""
gridlint/rules/links.py

Status probes for external links (SEC001 with link_status=invalid).

  - http_probe(url, timeout) -> "ok" | "broken" | "unknown"   (urllib HEAD request)
  - file_probe(target, base_dir) -> "ok" | "broken"
  - probe_all(targets, probe, timeout) -> {target: status}

Probes run in their own small pool, off the rule workers. Each link gets
future.result(timeout); a link that does not answer in time is "unknown",
which never produces a violation on its own.
"""

from __future__ import annotations

import logging
import os
import socket
import urllib.error
import urllib.parse
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

OK = "ok"
BROKEN = "broken"
UNKNOWN = "unknown"

PROBE_WORKERS = 4


def is_url(text: str) -> bool:
    low = text.strip().lower()
    return low.startswith("http://") or low.startswith("https://")


def http_probe(url: str, timeout: float) -> str:
    try:
        req = urllib.request.Request(url, method="HEAD", headers={"User-Agent": "gridlint-link-probe"})
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            code = resp.getcode()
    except urllib.error.HTTPError as e:
        code = e.code
    except (socket.timeout, TimeoutError):
        return UNKNOWN
    except urllib.error.URLError as e:
        if isinstance(e.reason, (socket.timeout, TimeoutError)):
            return UNKNOWN
        logger.debug("link probe failed url=%s error=%s", url, e.reason)
        return BROKEN
    except (ValueError, OSError) as e:
        logger.debug("link probe failed url=%s error=%s", url, e)
        return BROKEN
    return OK if 200 <= code < 400 else BROKEN


def file_probe(target: str, base_dir: Optional[str]) -> str:
    path = target
    if path.lower().startswith("file:"):
        path = urllib.request.url2pathname(urllib.parse.urlparse(path).path)
    candidates = [path]
    if base_dir and not os.path.isabs(path):
        candidates.insert(0, os.path.join(base_dir, path))
    return OK if any(os.path.exists(p) for p in candidates) else BROKEN


def probe_all(targets: Iterable[str], probe: Callable[[str, float], str], timeout: float) -> Dict[str, str]:
    unique = sorted(set(targets))
    if not unique:
        return {}
    out: Dict[str, str] = {}
    pool = ThreadPoolExecutor(max_workers=min(PROBE_WORKERS, len(unique)), thread_name_prefix="gridlint-probe")
    try:
        futures = {t: pool.submit(probe, t, timeout) for t in unique}
        for target, fut in futures.items():
            try:
                out[target] = fut.result(timeout=timeout)
            except FutureTimeout:
                out[target] = UNKNOWN
            except Exception as e:  # injected probes may raise anything
                logger.warning("link probe raised target=%s error=%s: %s", target, type(e).__name__, e)
                out[target] = UNKNOWN
    finally:
        # a hung probe must not hold up the lint run
        pool.shutdown(wait=False, cancel_futures=True)
    return out
