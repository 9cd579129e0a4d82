"""SSL configuration for HTTP sessions."""

import requests
import urllib3
from loguru import logger


def build_session(verify_ssl: bool = True) -> requests.Session:
    """Create a requests session, optionally without certificate verification."""
    session = requests.Session()
    if not verify_ssl:
        session.verify = False
        configure_requests_ssl_bypass()
    return session


def configure_requests_ssl_bypass():
    """Silence urllib3 warnings for requests made without verification."""
    try:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        logger.info("SSL certificate verification disabled for HTTP requests")
    except Exception as e:
        logger.error(f"Failed to configure requests SSL bypass: {e}")
