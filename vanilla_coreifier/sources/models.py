"""Everest version-listing dataclasses.

WHY: The version endpoint returns a flat JSON array of release
descriptors. A typed dataclass makes the three fields the installer
relies on explicit, and the bundled JSON schema catches a changed or
broken listing before any selection logic runs.

HOW: ReleaseInfo maps 1:1 to one listing entry; from_dict() parses a
raw dict. get_listing_schema() loads everest_versions.schema.json once
and caches it at module level.

RULES:
- branch, version and mainDownload are required on every entry
- version is an integer and grows monotonically per branch
- Unknown extra fields are ignored
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

_SCHEMA_PATH = Path(__file__).resolve().parent / "everest_versions.schema.json"

_CACHED_SCHEMA: Optional[Dict[str, Any]] = None


def get_listing_schema() -> Dict[str, Any]:
    """Return the JSON schema for the version listing (cached)."""
    global _CACHED_SCHEMA
    if _CACHED_SCHEMA is None:
        with open(_SCHEMA_PATH, encoding="utf-8") as f:
            _CACHED_SCHEMA = json.load(f)
    return _CACHED_SCHEMA


@dataclass
class ReleaseInfo:
    """One Everest release descriptor from the version listing.

    RULES:
    - branch: release channel label, e.g. "stable", "beta", "dev"
    - version: build number, larger is newer
    - download_url: URL of the release's main zip archive
    """

    branch: str
    version: int
    download_url: str

    @classmethod
    def from_dict(cls, data: dict) -> ReleaseInfo:
        return cls(
            branch=data["branch"],
            version=int(data["version"]),
            download_url=data["mainDownload"],
        )
