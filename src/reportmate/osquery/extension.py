"""
Helpers for the macadmins osquery extension.

Covers which tables the extension provides, where the extension binary is
found, and how JSON results are cut out of an interactive osqueryi transcript.
"""

import json
import logging
import re
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

EXTENSION_FILENAME = "macadmins_extension.ext"
STANDARD_INSTALL_PATH = Path("/usr/local/reportmate") / EXTENSION_FILENAME
BUNDLE_NAME = "ReportMate_ReportMate.bundle"

# Tables registered by the extension; queries against them need the session.
EXTENSION_TABLES = frozenset({
    "network_quality", "wifi_network", "mdm", "macos_profiles",
    "filevault_users", "pending_apple_updates", "munki_info",
    "munki_installs", "sofa_security_release_info", "sofa_unpatched_cves",
    "authdb", "alt_system_info", "macadmins_unified_log", "macos_rsr",
    "crowdstrike_falcon", "puppet_info", "puppet_logs", "puppet_state",
    "puppet_facts", "google_chrome_profiles", "file_lines",
})

_TABLE_REFERENCE = re.compile(r"\b(?:from|join)\s+([A-Za-z_][A-Za-z0-9_]*)", re.IGNORECASE)


def referenced_tables(query: str) -> List[str]:
    """Lower-cased table names following FROM or JOIN in a query."""
    return [name.lower() for name in _TABLE_REFERENCE.findall(query)]


def query_uses_extension_tables(query: str) -> bool:
    return any(name in EXTENSION_TABLES for name in referenced_tables(query))


def extension_candidates(configured: Optional[str] = None,
                         executable: Optional[str] = None,
                         cwd: Optional[Path] = None) -> List[Path]:
    """
    Candidate extension locations in lookup order.

    Order: configured path, bundled resource directory next to the package,
    bundle relative to the running executable, standard install location,
    then development source paths relative to the working directory.
    """
    candidates: List[Path] = []
    if configured:
        candidates.append(Path(configured).expanduser())

    candidates.append(Path(__file__).resolve().parent.parent / "resources" / "extensions" / EXTENSION_FILENAME)

    exec_dir = Path(executable or sys.argv[0] or ".").resolve().parent
    candidates.append(exec_dir / BUNDLE_NAME / "Resources" / "extensions" / EXTENSION_FILENAME)
    candidates.append(exec_dir / EXTENSION_FILENAME)

    candidates.append(STANDARD_INSTALL_PATH)

    base = cwd or Path.cwd()
    candidates.append(base / "Sources" / "Resources" / "extensions" / EXTENSION_FILENAME)
    candidates.append(base.parent / "Sources" / "Resources" / "extensions" / EXTENSION_FILENAME)
    return candidates


def resolve_extension_path(configured: Optional[str] = None,
                           candidates: Optional[Iterable[Path]] = None) -> Optional[Path]:
    """
    Return the first existing extension file.

    Args:
        configured: Explicitly configured path, checked first
        candidates: Override the lookup list

    Returns:
        Path to the extension, or None when no candidate exists
    """
    for candidate in candidates if candidates is not None else extension_candidates(configured):
        if candidate.is_file():
            logger.debug(f"Using osquery extension: {candidate}")
            return candidate
    if configured:
        logger.warning(f"Configured osquery extension not found: {configured}")
    return None


def _matching_bracket(text: str, start: int) -> Optional[int]:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
            if depth == 0:
                return index
    return None


def extract_json_array(text: str) -> Optional[Tuple[list, int]]:
    """
    Find the first complete JSON array in a transcript.

    Banners and prompts around the array are skipped. A ``[`` that does not
    open a parseable array (for example inside a log line) is passed over.

    Returns:
        Tuple of (parsed array, index just past its closing bracket), or None
        if no complete array has arrived yet
    """
    start = text.find("[")
    while start != -1:
        end = _matching_bracket(text, start)
        if end is None:
            return None
        try:
            value = json.loads(text[start:end + 1])
        except ValueError:
            value = None
        if isinstance(value, list):
            return value, end + 1
        start = text.find("[", start + 1)
    return None
