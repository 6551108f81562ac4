"""
Lookup and download of published Notecard firmware.

Images live in a public S3 bucket laid out as
``<channel>/notecard-<version>/notecard[-<type>]-<version>.bin``.
"""

import re
import logging
import xml.etree.ElementTree as ET
from typing import List

import requests

from .errors import NotecardError

FIRMWARE_BUCKET_URL = "https://s3.us-east-1.amazonaws.com/notecard-firmware"
DEFAULT_CHANNEL = "LTS"
HTTP_TIMEOUT = 60.0  # seconds

VERSION_PATTERN = re.compile(r"-(\d+\.\d+\.\d+\.\d+)\.(?:bin|dfu)")

# Firmware type prefix -> substrings found in model names
NOTECARD_TYPES = {
    "": ["500"],             # e.g. NOTE-NBGL-500
    "u5": ["NB", "MB", "WB"],  # e.g. NOTE-WBNA, NOTE-NBGL, NOTE-MBNA
    "wl": ["LW"],            # e.g. NOTE-LWL
    "s3": ["ESP"],           # e.g. NOTE-ESP32
}

log = logging.getLogger("firmware_index")


class FirmwareIndexError(NotecardError):
    """The firmware index or image could not be fetched."""
    pass


def compare_versions(v1: str, v2: str) -> int:
    """Returns 1 if v1 > v2, -1 if v1 < v2, 0 if equal. Non-numeric parts count as 0."""
    parts1 = v1.split(".")
    parts2 = v2.split(".")
    for i in range(max(len(parts1), len(parts2))):
        p1 = int(parts1[i]) if i < len(parts1) and parts1[i].isdigit() else 0
        p2 = int(parts2[i]) if i < len(parts2) and parts2[i].isdigit() else 0
        if p1 != p2:
            return 1 if p1 > p2 else -1
    return 0


def notecard_type_from_model(model: str) -> str:
    """Maps a Notecard model name (e.g. NOTE-WBNA) to its firmware type prefix."""
    if not model:
        return ""
    # "500" is checked first so NOTE-NBGL-500 is not mistaken for a u5 part
    for notecard_type, substrings in NOTECARD_TYPES.items():
        if any(s in model for s in substrings):
            return notecard_type
    return ""


def is_known_model(model: str) -> bool:
    return bool(notecard_type_from_model(model)) or "500" in (model or "")


def extract_keys(xml_data: bytes) -> List[str]:
    """Object keys from an S3 ListBucketResult document."""
    try:
        root = ET.fromstring(xml_data)
    except ET.ParseError as e:
        raise FirmwareIndexError(f"failed to parse firmware index: {e}") from e
    # Tags carry the S3 namespace, so match on the local name
    return [el.text for el in root.iter() if el.tag.rsplit("}", 1)[-1] == "Key" and el.text]


def extract_versions(keys: List[str]) -> List[str]:
    """Unique versions found in the given keys, oldest first."""
    versions = set()
    for key in keys:
        match = VERSION_PATTERN.search(key)
        if match:
            versions.add(match.group(1))
    result = list(versions)
    result.sort(key=lambda v: [int(p) for p in v.split(".")])
    return result


def list_versions(channel: str, notecard_type: str) -> List[str]:
    """
    Lists firmware versions published on a channel for a Notecard type.

    Raises:
        FirmwareIndexError: the index could not be fetched or parsed.
    """
    try:
        response = requests.get(FIRMWARE_BUCKET_URL, params={"prefix": channel}, timeout=HTTP_TIMEOUT)
    except requests.RequestException as e:
        raise FirmwareIndexError(f"failed to fetch firmware index: {e}") from e
    if not response.ok:
        raise FirmwareIndexError(f"failed to fetch firmware index: {response.status_code} {response.reason}")

    keys = extract_keys(response.content)
    pattern = f"-{notecard_type}-"
    if notecard_type:
        relevant = [k for k in keys if pattern in k]
    else:
        # Untyped images are named notecard-<version>.bin
        relevant = [k for k in keys if re.match(r"notecard-\d", k.rsplit("/", 1)[-1])]
    log.debug(f"{len(keys)} keys in index, {len(relevant)} for type {notecard_type!r}")
    return extract_versions(relevant)


def latest_version(channel: str, notecard_type: str) -> str:
    versions = list_versions(channel, notecard_type)
    if not versions:
        raise FirmwareIndexError(f"no firmware versions found for {channel}/{notecard_type}")
    latest = versions[0]
    for version in versions[1:]:
        if compare_versions(version, latest) > 0:
            latest = version
    return latest


def firmware_url(channel: str, notecard_type: str, version: str) -> str:
    """Download URL for one firmware image."""
    directory = f"notecard-{version}"
    if channel == "DevRel":
        channel = "DevRel/" + ".".join(version.split(".")[:3])
    if notecard_type:
        filename = f"notecard-{notecard_type}-{version}.bin"
    else:
        filename = f"notecard-{version}.bin"
    return f"{FIRMWARE_BUCKET_URL}/{channel}/{directory}/{filename}"


def download_firmware(url: str) -> bytes:
    """
    Raises:
        FirmwareIndexError: the download failed or returned nothing.
    """
    log.info(f"Downloading {url}")
    try:
        response = requests.get(url, timeout=HTTP_TIMEOUT)
    except requests.RequestException as e:
        raise FirmwareIndexError(f"failed to download firmware: {e}") from e
    if not response.ok:
        raise FirmwareIndexError(f"failed to download firmware: {response.status_code} {response.reason} at {url}")
    if not response.content:
        raise FirmwareIndexError(f"firmware download from {url} was empty")
    return response.content
