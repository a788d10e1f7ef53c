"""
Host connectivity probe used to decide whether remote OCR is worth trying.
"""

import logging

import requests

from expense_scan.config import settings

logger = logging.getLogger(__name__)


def has_network_connectivity(url: str = None, timeout: float = None) -> bool:
    """
    Report whether the host can currently reach the network.

    Any HTTP answer, even an error status, counts as connected. Only
    transport failures (DNS, refused connection, timeout) count as offline.
    """
    url = url or settings.OCR_CONNECTIVITY_URL
    timeout = timeout if timeout is not None else settings.OCR_CONNECTIVITY_TIMEOUT

    try:
        requests.head(url, timeout=timeout, allow_redirects=False)
        return True
    except requests.RequestException as e:
        logger.info("Connectivity probe failed", extra={"url": url, "error": str(e)})
        return False
