"""
Device fingerprints.

A fingerprint is derived from the user agent, the network the request
comes from and an optional id supplied by the client. The network part is
the /24 (IPv4) or /64 (IPv6) prefix, so a device keeps its fingerprint
while its address moves inside the same network.
"""
import hashlib
import ipaddress


def network_origin(ip) -> str:
    if not ip:
        return "unknown"
    try:
        addr = ipaddress.ip_address(ip.strip())
    except ValueError:
        return "unknown"
    prefix = 24 if addr.version == 4 else 64
    return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))


def derive_fingerprint(user_agent, ip, client_id=None) -> str:
    data = "|".join([
        (user_agent or "").strip(),
        network_origin(ip),
        (client_id or "").strip(),
    ])
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def describe_user_agent(user_agent) -> dict:
    """Browser, operating system and device type, for the device list."""
    if not user_agent:
        return {"browser": "Unknown", "operating_system": "Unknown", "device_type": "Unknown"}

    ua = user_agent
    browser = "Unknown"
    if "Edg" in ua:
        browser = "Edge"
    elif "OPR" in ua or "Opera" in ua:
        browser = "Opera"
    elif "Firefox" in ua:
        browser = "Firefox"
    elif "Chrome" in ua and "Chromium" not in ua:
        browser = "Chrome"
    elif "Safari" in ua:
        browser = "Safari"

    # iOS first: its user agents also contain "Mac OS X"
    device_type = "Desktop"
    if "iPhone" in ua or "iPad" in ua:
        operating_system = "iOS"
        device_type = "Tablet" if "iPad" in ua else "Mobile"
    elif "Android" in ua:
        operating_system = "Android"
        device_type = "Mobile" if "Mobile" in ua else "Tablet"
    elif "Windows" in ua:
        operating_system = "Windows"
    elif "Mac OS X" in ua or "macOS" in ua:
        operating_system = "macOS"
    elif "Linux" in ua:
        operating_system = "Linux"
    else:
        operating_system = "Unknown"

    return {"browser": browser, "operating_system": operating_system, "device_type": device_type}
