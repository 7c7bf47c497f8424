"""Identity strategies and candidate remote paths derived from them."""

import hashlib
from typing import Iterable, Optional

DEFAULT_BLOCKED_URL_TEMPLATES = [
    "kidsafe/families/{uid}/blockedUrls",
    "kidsafe/blockedUrls",
    "kidsafe/blockedUrls_{uid}",
    "families/{uid}/blockedUrls",
    "users/{uid}/blockedUrls",
    "blockedUrls",
]

DEFAULT_TIME_RULE_TEMPLATES = [
    "{uid}/syncStatus/timeRules",
    "kidsafe/families/{uid}/timeRules",
    "families/{uid}/timeRules",
    "users/{uid}/timeRules",
]


def local_auth_uid(email: str) -> str:
    """Legacy identifier: "user_" plus the first 16 hex chars of md5(email)."""
    digest = hashlib.md5(email.encode("utf-8")).hexdigest()
    return "user_" + digest[:16]


class IdentityStrategy:
    """Derives one remote identifier, or None when it does not apply."""

    name = "base"

    def derive(self, family_id: str, email: Optional[str]) -> Optional[str]:
        raise NotImplementedError


class PrimaryIdentity(IdentityStrategy):
    name = "primary"

    def derive(self, family_id: str, email: Optional[str]) -> Optional[str]:
        return family_id or None


class LocalAuthIdentity(IdentityStrategy):
    name = "local_auth"

    def derive(self, family_id: str, email: Optional[str]) -> Optional[str]:
        if not email:
            return None
        return local_auth_uid(email.strip())


def default_identity_strategies() -> list[IdentityStrategy]:
    return [PrimaryIdentity(), LocalAuthIdentity()]


def derive_identities(
    family_id: str,
    email: Optional[str] = None,
    strategies: Optional[Iterable[IdentityStrategy]] = None,
) -> list[str]:
    """Collect the distinct identifiers produced by each strategy, in order."""
    identities: list[str] = []
    for strategy in strategies if strategies is not None else default_identity_strategies():
        uid = strategy.derive(family_id, email)
        if uid and uid not in identities:
            identities.append(uid)
    return identities


def build_candidate_paths(templates: Iterable[str], identities: Iterable[str]) -> list[str]:
    """
    Expand path templates for every identity.

    Templates containing "{uid}" yield one path per identity; the rest
    are used once. Duplicates are dropped and first-seen order is kept.

    Example:
        >>> build_candidate_paths(["a/{uid}", "b"], ["x", "y"])
        ['a/x', 'a/y', 'b']
    """
    identities = list(identities)
    paths: list[str] = []
    for template in templates:
        template = template.strip().strip("/")
        if not template:
            continue
        if "{uid}" in template:
            expanded = [template.replace("{uid}", uid) for uid in identities]
        else:
            expanded = [template]
        for path in expanded:
            if path not in paths:
                paths.append(path)
    return paths
