import httpx
import ipaddress
import logging
import re
import secrets
import string
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# ============================================
# SHORT CODES & USERNAMES
# ============================================
CODE_ALPHABET = string.ascii_letters + string.digits
USERNAME_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def generate_code(length: int = 8) -> str:
    """Opaque short code used in QR redirect URLs."""
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_invitation_token() -> str:
    return secrets.token_urlsafe(32)


def random_suffix(length: int = 6) -> str:
    return ''.join(secrets.choice(USERNAME_SUFFIX_ALPHABET) for _ in range(length))


def slugify_username(value: str, fallback: str = "user") -> str:
    """Lower-case alphanumerics only, e.g. 'Jane.Doe+x' -> 'janedoex'."""
    slug = re.sub(r'[^a-z0-9]', '', (value or '').lower())
    return slug or fallback


def username_from_email(email: str) -> str:
    return slugify_username(email.split('@')[0])


# ============================================
# DEVICE INFO PARSER
# ============================================
# Ordered: the first matching marker wins
_DEVICE_NAMES = (
    (('iphone',), "iPhone"),
    (('ipad',), "iPad"),
    (('samsung', 'sm-'), "Samsung Galaxy"),
    (('pixel',), "Google Pixel"),
    (('oneplus',), "OnePlus"),
    (('xiaomi', 'redmi'), "Xiaomi"),
    (('windows',), "Windows PC"),
    (('macintosh', 'mac os'), "Mac"),
    (('android',), "Android Device"),
    (('linux',), "Linux PC"),
)

_BROWSERS = (
    (('edg/', 'edge'), "Edge"),
    (('opr/', 'opera'), "Opera"),
    (('firefox', 'fxios'), "Firefox"),
    (('chrome', 'crios'), "Chrome"),
    (('safari',), "Safari"),
)

_OPERATING_SYSTEMS = (
    (('windows nt 10',), "Windows 10/11"),
    (('windows',), "Windows"),
    (('iphone os', 'cpu os', 'ipad'), "iOS"),
    (('android',), "Android"),
    (('mac os x', 'macintosh'), "macOS"),
    (('linux',), "Linux"),
)


def _first_match(ua: str, table, default: str) -> str:
    for markers, label in table:
        if any(marker in ua for marker in markers):
            return label
    return default


def parse_device_info(user_agent: Optional[str]) -> Dict[str, str]:
    """
    Parse user agent into user-friendly device information.
    Returns: device_type, device_name, browser, os
    """
    ua = (user_agent or '').lower()

    if 'ipad' in ua or 'tablet' in ua or ('android' in ua and 'mobile' not in ua):
        device_type = "Tablet"
    elif 'mobile' in ua or 'iphone' in ua or 'android' in ua:
        device_type = "Mobile"
    else:
        device_type = "Desktop"

    return {
        "device_type": device_type,
        "device_name": _first_match(ua, _DEVICE_NAMES, "Unknown Device"),
        "browser": _first_match(ua, _BROWSERS, "Unknown Browser"),
        "os": _first_match(ua, _OPERATING_SYSTEMS, "Unknown OS"),
    }


# ============================================
# IP TO LOCATION
# ============================================
UNKNOWN_LOCATION = {
    "country": "Unknown",
    "city": "Unknown",
    "region": "Unknown",
    "latitude": None,
    "longitude": None,
}

LOCAL_LOCATION = {
    "country": "Local",
    "city": "Localhost",
    "region": "Local Network",
    "latitude": None,
    "longitude": None,
}


async def get_location_from_ip(ip_address: Optional[str], timeout: float = 3.0) -> Dict[str, Optional[str]]:
    """
    Get location data from IP address using ip-api.com (free, no key needed).
    Never raises: anything that goes wrong yields "Unknown".
    """
    try:
        ip = ipaddress.ip_address((ip_address or '').strip())
    except ValueError:
        return dict(UNKNOWN_LOCATION)

    if ip.is_private or ip.is_loopback or ip.is_link_local:
        return dict(LOCAL_LOCATION)

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(
                f"http://ip-api.com/json/{ip}",
                params={"fields": "status,country,regionName,city,lat,lon"},
            )

        if response.status_code == 200:
            data = response.json()
            if data.get("status") == "success":
                return {
                    "country": data.get("country") or "Unknown",
                    "city": data.get("city") or "Unknown",
                    "region": data.get("regionName") or "Unknown",
                    "latitude": data.get("lat"),
                    "longitude": data.get("lon"),
                }
    except Exception as e:
        logger.warning(f"Location lookup failed for {ip}: {e}")

    return dict(UNKNOWN_LOCATION)
