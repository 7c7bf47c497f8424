"""Pure transforms for the agent-managed section of the hosts file."""

from typing import Iterable

from .common import BLOCKED_IP

SECTION_START = "# === KidSafe PC Blocked Domains - START ==="
SECTION_END = "# === KidSafe PC Blocked Domains - END ==="

# Substrings used to recognise marker lines, also matching hand-mangled markers
START_TOKEN = "KidSafe PC Blocked Domains - START"
END_TOKEN = "KidSafe PC Blocked Domains - END"


def expand_domains(domains: Iterable[str]) -> list[str]:
    """
    Expand domains into the hostnames written to the hosts file.

    Each domain contributes itself plus its "www." variant unless it
    already starts with "www.". The result is sorted and deduplicated.
    """
    expanded = set()
    for domain in domains:
        domain = domain.strip().lower()
        if not domain:
            continue
        expanded.add(domain)
        if not domain.startswith("www."):
            expanded.add("www." + domain)
    return sorted(expanded)


def strip_managed_section(content: str) -> str:
    """
    Remove the managed section, markers included, from hosts file content.

    Every other line keeps its text and relative order. Line endings are
    normalized to "\\n" and trailing blank lines are dropped, so the
    separator written by compute_desired_content does not accumulate.
    """
    lines = content.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    kept = []
    in_section = False

    for line in lines:
        if START_TOKEN in line:
            in_section = True
            continue
        if END_TOKEN in line:
            in_section = False
            continue
        if not in_section:
            kept.append(line)

    while kept and not kept[-1].strip():
        kept.pop()
    return "\n".join(kept)


def render_section(domains: Iterable[str], ip: str = BLOCKED_IP) -> list[str]:
    """Build the managed section lines, markers included."""
    lines = [SECTION_START]
    lines.extend(f"{ip} {hostname}" for hostname in expand_domains(domains))
    lines.append(SECTION_END)
    return lines


def compute_desired_content(current: str, domains: Iterable[str], ip: str = BLOCKED_IP) -> str:
    """
    Compute the full hosts file content for a blocked domain set.

    Any existing managed section is replaced; content outside it is
    preserved. Calling this again on its own output with the same domains
    returns identical text.

    Args:
        current: Current hosts file content
        domains: Normalized domains to block
        ip: Redirect target written for every hostname

    Returns:
        New hosts file content
    """
    base = strip_managed_section(current)
    section = "\n".join(render_section(domains, ip))
    if base:
        return f"{base}\n\n{section}\n"
    return f"{section}\n"


def parse_managed_section(content: str) -> set[tuple[str, str]]:
    """
    Extract the (ip, hostname) pairs found inside the managed section.

    Comment and blank lines inside the section are ignored.
    """
    pairs = set()
    in_section = False

    for line in content.splitlines():
        stripped = line.strip()
        if START_TOKEN in stripped:
            in_section = True
            continue
        if END_TOKEN in stripped:
            in_section = False
            continue
        if not in_section or not stripped or stripped.startswith("#"):
            continue
        parts = stripped.split()
        if len(parts) >= 2:
            pairs.add((parts[0], parts[1]))
    return pairs


def has_managed_section(content: str) -> bool:
    return START_TOKEN in content and END_TOKEN in content
