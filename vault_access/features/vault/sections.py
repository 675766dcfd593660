"""
Request shapes and normalization for each vault section.

Passwords, configurations, and contacts are listed through the organization
relationship endpoint. Flexible assets and documents only exist as flat
collections filtered by organization.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from vault_access.features.permissions.models import Section
from vault_access.features.vault.connector import VaultRecord


@dataclass(frozen=True)
class NormalizedOrg:
    vendor_id: str
    name: str
    short_name: Optional[str] = None
    status: Optional[str] = None
    org_type: Optional[str] = None
    vendor_updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class NormalizedCategory:
    section: Section
    vendor_id: str
    name: str
    description: Optional[str] = None


@dataclass(frozen=True)
class NormalizedAsset:
    vendor_id: str
    org_id: str
    section: Section
    category_id: Optional[str]
    category_name: Optional[str]
    name: str
    vendor_updated_at: Optional[datetime] = None


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _plain_name(record: VaultRecord, fallback: str) -> str:
    return record.attributes.get("name") or f"{fallback} {record.id}"


def _configuration_name(record: VaultRecord) -> str:
    attrs = record.attributes
    return attrs.get("hostname") or attrs.get("name") or f"Configuration {record.id}"


def _contact_name(record: VaultRecord) -> str:
    attrs = record.attributes
    full = " ".join(p for p in (attrs.get("first-name"), attrs.get("last-name")) if p)
    return full or f"Contact {record.id}"


@dataclass(frozen=True)
class SectionShape:
    section: Section
    nested: bool
    category_id_attr: str
    category_name_attr: str
    sort: Optional[str]
    name_of: Callable[[VaultRecord], str]
    taxonomy_path: Optional[str] = None

    def list_path(self, org_id: str) -> str:
        if self.nested:
            return f"/organizations/{org_id}/relationships/{self.section.value}"
        return f"/{self.section.value}"

    def list_filters(
        self,
        org_id: str,
        category_id: Optional[str] = None,
        updated_since: Optional[datetime] = None,
    ) -> Dict[str, str]:
        filters: Dict[str, str] = {}
        if not self.nested:
            filters["organization-id"] = org_id
        if category_id:
            filters[self.category_id_attr] = category_id
        if updated_since is not None:
            filters["updated-at"] = f"{format_timestamp(updated_since)},*"
        return filters

    def record_path(self, org_id: str, record_id: str) -> str:
        if self.nested:
            return f"/organizations/{org_id}/relationships/{self.section.value}/{record_id}"
        return f"/{self.section.value}/{record_id}"

    def normalize(self, record: VaultRecord, org_id: str) -> NormalizedAsset:
        attrs = record.attributes
        category_id = attrs.get(self.category_id_attr)
        return NormalizedAsset(
            vendor_id=record.id,
            org_id=str(attrs.get("organization-id") or org_id),
            section=self.section,
            category_id=str(category_id) if category_id is not None else None,
            category_name=attrs.get(self.category_name_attr),
            name=self.name_of(record),
            vendor_updated_at=parse_timestamp(attrs.get("updated-at")),
        )


SECTION_SHAPES: Dict[Section, SectionShape] = {
    Section.PASSWORDS: SectionShape(
        section=Section.PASSWORDS,
        nested=True,
        category_id_attr="password-category-id",
        category_name_attr="password-category-name",
        sort="name",
        name_of=lambda r: _plain_name(r, "Password"),
        taxonomy_path="/password_categories",
    ),
    Section.FLEXIBLE_ASSETS: SectionShape(
        section=Section.FLEXIBLE_ASSETS,
        nested=False,
        category_id_attr="flexible-asset-type-id",
        category_name_attr="flexible-asset-type-name",
        sort="-updated-at",
        name_of=lambda r: _plain_name(r, "Flexible Asset"),
        taxonomy_path="/flexible_asset_types",
    ),
    Section.CONFIGURATIONS: SectionShape(
        section=Section.CONFIGURATIONS,
        nested=True,
        category_id_attr="configuration-type-id",
        category_name_attr="configuration-type-name",
        sort="name",
        name_of=_configuration_name,
        taxonomy_path="/configuration_types",
    ),
    Section.CONTACTS: SectionShape(
        section=Section.CONTACTS,
        nested=True,
        category_id_attr="contact-type-id",
        category_name_attr="contact-type-name",
        sort="last-name",
        name_of=_contact_name,
        taxonomy_path="/contact_types",
    ),
    Section.DOCUMENTS: SectionShape(
        section=Section.DOCUMENTS,
        nested=False,
        category_id_attr="document-folder-id",
        category_name_attr="document-folder-name",
        sort="name",
        name_of=lambda r: _plain_name(r, "Document"),
    ),
}


def shape_for(section: Section) -> SectionShape:
    return SECTION_SHAPES[Section(section)]


def normalize_org(record: VaultRecord) -> NormalizedOrg:
    attrs = record.attributes
    return NormalizedOrg(
        vendor_id=record.id,
        name=attrs.get("name") or f"Organization {record.id}",
        short_name=attrs.get("short-name"),
        status=attrs.get("organization-status-name"),
        org_type=attrs.get("organization-type-name"),
        vendor_updated_at=parse_timestamp(attrs.get("updated-at")),
    )


def normalize_category(section: Section, record: VaultRecord) -> NormalizedCategory:
    attrs = record.attributes
    return NormalizedCategory(
        section=section,
        vendor_id=record.id,
        name=attrs.get("name") or record.id,
        description=attrs.get("description"),
    )
