"""
Scope precedence resolution for vaulted data.

Hierarchy: organization -> section -> category -> individual asset.

Resolution:
1. Collect every rule of the user's effective groups whose org matches
   (or is the global "*" rule) and whose section / category / asset are each
   either null or equal to the requested value.
2. The most specific tier with a match decides.
3. Ties inside that tier go to the most restrictive mode
   (DENIED > READ_ONLY > READ_WRITE), across all groups.
4. No matching rule means DENIED.

``evaluate_rules`` is pure and synchronous; ``resolve_access`` and
``batch_resolve_access`` only add the two queries that load its inputs.
"""
import enum
from dataclasses import dataclass, field
from typing import (
    Awaitable, Callable, Dict, Generic, Iterable, List, Mapping, Optional, Sequence, Set, Tuple,
    TypeVar,
)

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from vault_access.features.permissions.models import (
    AccessMode,
    GLOBAL_ORG,
    PermissionGroup,
    PermissionRule,
    Section,
)
from vault_access.features.permissions.membership import group_ids_for_user
from vault_access.features.roles.provider import RoleMembershipProvider
from vault_access.utils import get_logger


log = get_logger(__name__)

T = TypeVar("T")


class Specificity(enum.IntEnum):
    GLOBAL = -1
    ORG = 0
    SECTION = 1
    CATEGORY = 2
    ASSET = 3


# Higher wins a same-specificity tie
RESTRICTIVENESS: Dict[AccessMode, int] = {
    AccessMode.READ_WRITE: 0,
    AccessMode.READ_ONLY: 1,
    AccessMode.DENIED: 2,
}


# ============================================================================
# Value Types
# ============================================================================

@dataclass(frozen=True)
class ScopeTuple:
    """
    A requested scope. ``None`` means the caller did not narrow that
    dimension; it only matches rules that are null there too.
    """
    org_id: str
    section: Optional[Section] = None
    category_id: Optional[str] = None
    asset_id: Optional[str] = None

    def __post_init__(self):
        if self.section is not None and not isinstance(self.section, Section):
            object.__setattr__(self, "section", Section(self.section))

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "org_id": self.org_id,
            "section": self.section.value if self.section else None,
            "category_id": self.category_id,
            "asset_id": self.asset_id,
        }


@dataclass(frozen=True)
class RuleSnapshot:
    """Read-only copy of a rule, detached from the session."""
    id: str
    group_id: str
    group_name: str
    org_id: str
    section: Optional[Section]
    category_id: Optional[str]
    asset_id: Optional[str]
    access_mode: AccessMode

    @classmethod
    def from_rule(cls, rule: PermissionRule, group_name: str) -> "RuleSnapshot":
        return cls(
            id=rule.id,
            group_id=rule.group_id,
            group_name=group_name,
            org_id=rule.org_id,
            section=rule.section,
            category_id=rule.category_id,
            asset_id=rule.asset_id,
            access_mode=rule.access_mode,
        )

    @property
    def specificity(self) -> Specificity:
        if self.asset_id:
            return Specificity.ASSET
        if self.category_id:
            return Specificity.CATEGORY
        if self.section:
            return Specificity.SECTION
        if self.org_id == GLOBAL_ORG:
            return Specificity.GLOBAL
        return Specificity.ORG


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    mode: AccessMode
    rule_id: Optional[str] = None
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    specificity: Optional[Specificity] = None

    @classmethod
    def deny(cls) -> "AccessDecision":
        return cls(allowed=False, mode=AccessMode.DENIED)

    @classmethod
    def from_rule(cls, rule: RuleSnapshot) -> "AccessDecision":
        return cls(
            allowed=rule.access_mode != AccessMode.DENIED,
            mode=rule.access_mode,
            rule_id=rule.id,
            group_id=rule.group_id,
            group_name=rule.group_name,
            specificity=rule.specificity,
        )


@dataclass
class FilteredPage(Generic[T]):
    """One page of permission-filtered candidates."""
    items: List[Tuple[T, AccessDecision]] = field(default_factory=list)
    total: int = 0
    total_before_filter: int = 0
    page: int = 1
    page_size: int = 25

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


# ============================================================================
# Pure Evaluation
# ============================================================================

def rule_matches(rule: RuleSnapshot, scope: ScopeTuple) -> bool:
    if rule.org_id == GLOBAL_ORG:
        # Global rules carry no narrower scope
        return rule.section is None and rule.category_id is None and rule.asset_id is None
    if rule.org_id != scope.org_id:
        return False
    if rule.section is not None and rule.section != scope.section:
        return False
    if rule.category_id is not None and rule.category_id != scope.category_id:
        return False
    if rule.asset_id is not None and rule.asset_id != scope.asset_id:
        return False
    return True


def _precedence(rule: RuleSnapshot):
    return (-rule.specificity, -RESTRICTIVENESS[rule.access_mode], rule.id)


def evaluate_rules(rules: Iterable[RuleSnapshot], scope: ScopeTuple) -> AccessDecision:
    """
    Decide access for one scope from an already loaded rule set.

    Returns the decision of the most specific matching rule, most restrictive
    first on ties, lowest rule id after that. Denied when nothing matches.
    """
    winner: Optional[RuleSnapshot] = None
    for rule in rules:
        if not rule_matches(rule, scope):
            continue
        if winner is None or _precedence(rule) < _precedence(winner):
            winner = rule

    if winner is None:
        return AccessDecision.deny()
    return AccessDecision.from_rule(winner)


# ============================================================================
# Loading
# ============================================================================

async def load_rules(
    db: AsyncSession,
    group_ids: Iterable[str],
    org_ids: Iterable[str],
) -> List[RuleSnapshot]:
    """Load the rules of the given groups for the given orgs plus global rules."""
    group_ids = list(group_ids)
    if not group_ids:
        return []

    wanted_orgs = set(org_ids) | {GLOBAL_ORG}
    stmt = (
        select(PermissionRule, PermissionGroup.name)
        .join(PermissionGroup, PermissionGroup.id == PermissionRule.group_id)
        .where(
            PermissionRule.group_id.in_(group_ids),
            PermissionRule.org_id.in_(wanted_orgs),
        )
    )
    result = await db.execute(stmt)
    return [RuleSnapshot.from_rule(rule, group_name) for rule, group_name in result.all()]


# ============================================================================
# Resolution
# ============================================================================

async def resolve_access(
    db: AsyncSession,
    roles: RoleMembershipProvider,
    user_id: str,
    org_id: str,
    section: Optional[Section | str] = None,
    category_id: Optional[str] = None,
    asset_id: Optional[str] = None,
) -> AccessDecision:
    """
    Resolve a single scope for a user.

    Args:
        db: Database session
        roles: Source of the user's current roles
        user_id: User to check
        org_id: Vault organization id
        section: passwords | flexible_assets | configurations | contacts | documents
        category_id: Password category, asset type, configuration type, ...
        asset_id: Vault record id

    Returns:
        AccessDecision naming the rule that decided, if any
    """
    scope = ScopeTuple(org_id, section, category_id, asset_id)

    group_ids = await group_ids_for_user(db, roles, user_id)
    if not group_ids:
        log.debug("User %s has no vault permission groups, denying %s", user_id, scope.as_dict())
        return AccessDecision.deny()

    rules = await load_rules(db, group_ids, [org_id])
    decision = evaluate_rules(rules, scope)

    log.debug(
        "Vault access user=%s scope=%s -> %s (rule=%s specificity=%s)",
        user_id, scope.as_dict(), decision.mode.value, decision.rule_id, decision.specificity,
    )
    return decision


async def batch_resolve_access(
    db: AsyncSession,
    roles: RoleMembershipProvider,
    user_id: str,
    scopes: Iterable[ScopeTuple],
) -> Dict[ScopeTuple, AccessDecision]:
    """
    Resolve many scopes for one user with two queries in total.

    Effective groups and every rule for the distinct orgs in ``scopes`` are
    loaded once; each scope is then evaluated in memory exactly as
    ``resolve_access`` would.
    """
    scopes = list(dict.fromkeys(scopes))
    if not scopes:
        return {}

    group_ids = await group_ids_for_user(db, roles, user_id)
    if not group_ids:
        return {scope: AccessDecision.deny() for scope in scopes}

    rules = await load_rules(db, group_ids, {scope.org_id for scope in scopes})

    rules_by_org: Dict[str, List[RuleSnapshot]] = {}
    for rule in rules:
        rules_by_org.setdefault(rule.org_id, []).append(rule)
    global_rules = rules_by_org.get(GLOBAL_ORG, [])

    return {
        scope: evaluate_rules(rules_by_org.get(scope.org_id, []) + global_rules, scope)
        for scope in scopes
    }


def filter_allowed(
    candidates: Sequence[T],
    scope_of: Callable[[T], ScopeTuple],
    decisions: Mapping[ScopeTuple, AccessDecision],
    page: int = 1,
    page_size: int = 25,
) -> FilteredPage[T]:
    """
    Drop denied candidates, then slice out the requested page.

    ``total_before_filter`` lets callers notice when filtering starved an
    over-fetched page.
    """
    allowed = []
    for candidate in candidates:
        decision = decisions.get(scope_of(candidate))
        if decision is not None and decision.allowed:
            allowed.append((candidate, decision))

    start = (page - 1) * page_size
    return FilteredPage(
        items=allowed[start:start + page_size],
        total=len(allowed),
        total_before_filter=len(candidates),
        page=page,
        page_size=page_size,
    )


async def allowed_org_ids(
    db: AsyncSession,
    roles: RoleMembershipProvider,
    user_id: str,
    known_org_ids: Optional[Callable[[], Awaitable[Set[str]]]] = None,
) -> Set[str]:
    """
    Orgs where the user holds a non-denied org-level rule.

    A non-denied global rule expands to ``known_org_ids()``, normally every
    cached organization. An org-level DENIED rule removes its org again.
    """
    group_ids = await group_ids_for_user(db, roles, user_id)
    if not group_ids:
        return set()

    stmt = (
        select(PermissionRule.org_id, PermissionRule.access_mode)
        .where(
            PermissionRule.group_id.in_(group_ids),
            PermissionRule.section.is_(None),
            PermissionRule.category_id.is_(None),
            PermissionRule.asset_id.is_(None),
        )
    )
    rows = (await db.execute(stmt)).all()

    modes_by_org: Dict[str, Set[AccessMode]] = {}
    for org_id, mode in rows:
        modes_by_org.setdefault(org_id, set()).add(mode)

    global_modes = modes_by_org.pop(GLOBAL_ORG, set())
    allowed = set()
    if global_modes and AccessMode.DENIED not in global_modes and known_org_ids is not None:
        allowed = set(await known_org_ids())

    for org_id, modes in modes_by_org.items():
        if AccessMode.DENIED in modes:
            allowed.discard(org_id)
        else:
            allowed.add(org_id)
    return allowed
