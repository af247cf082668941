"""Static catalog of tier definitions and their feature maps."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from core.tier_constants import SUPPORTED_TIERS, TierName
from services.tier_errors import InvalidTierNameError


@dataclass(frozen=True)
class ChatCreationFlags:
    general_mode_only: bool
    subject_specific_chats: bool
    unlimited_general_chats: bool
    max_daily_chats: int
    available_subjects: Tuple[str, ...]


@dataclass(frozen=True)
class ChatAccessFlags:
    can_open_all_chats: bool
    can_open_general_chats: bool
    can_open_subject_chats: bool
    can_view_chat_history: bool


@dataclass(frozen=True)
class FeatureFlags:
    unlimited_messaging: bool
    content_card_linking: bool
    file_uploads: bool
    chat_linking: bool
    advanced_features: bool


@dataclass(frozen=True)
class UiRestrictionFlags:
    show_subject_selection: bool
    show_premium_features: bool
    show_upgrade_prompts: bool
    hide_disabled_subjects: bool


@dataclass(frozen=True)
class TierFeatures:
    chat_creation: ChatCreationFlags
    chat_access: ChatAccessFlags
    features: FeatureFlags
    ui_restrictions: UiRestrictionFlags

    def lookup(self, flag: str) -> Optional[Any]:
        """Resolve ``flag`` (``name`` or ``group.name``) to its raw value, or ``None``."""

        normalized = str(flag or "").strip().lower()
        if not normalized:
            return None
        group_name, _, flag_name = normalized.rpartition(".")
        group = getattr(self, group_name or "features", None)
        if group is None or not hasattr(type(group), "__dataclass_fields__"):
            return None
        if flag_name not in {item.name for item in fields(group)}:
            return None
        return getattr(group, flag_name)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        payload: Dict[str, Dict[str, Any]] = {}
        for group_field in fields(self):
            group = getattr(self, group_field.name)
            values: Dict[str, Any] = {}
            for item in fields(group):
                value = getattr(group, item.name)
                values[item.name] = list(value) if isinstance(value, tuple) else value
            payload[group_field.name] = values
        return payload


@dataclass(frozen=True)
class TierDefinition:
    name: TierName
    label: str
    display_name: str
    price: str
    features: TierFeatures = field(repr=False)


ALL_SUBJECTS: Tuple[str, ...] = (
    "General",
    "Mathematics",
    "Science",
    "Physics",
    "Chemistry",
    "History",
    "Literature",
    "Accounting & Finance",
)

_ADVANCED = TierDefinition(
    name=TierName.ADVANCED,
    label="Advanced",
    display_name="Advanced Mode",
    price="Free",
    features=TierFeatures(
        chat_creation=ChatCreationFlags(
            general_mode_only=True,
            subject_specific_chats=False,
            unlimited_general_chats=True,
            max_daily_chats=0,
            available_subjects=("General",),
        ),
        chat_access=ChatAccessFlags(
            can_open_all_chats=False,
            can_open_general_chats=True,
            can_open_subject_chats=False,
            can_view_chat_history=True,
        ),
        features=FeatureFlags(
            unlimited_messaging=True,
            content_card_linking=True,
            file_uploads=False,
            chat_linking=False,
            advanced_features=False,
        ),
        ui_restrictions=UiRestrictionFlags(
            show_subject_selection=False,
            show_premium_features=False,
            show_upgrade_prompts=True,
            hide_disabled_subjects=True,
        ),
    ),
)

_PRO = TierDefinition(
    name=TierName.PRO,
    label="PRO",
    display_name="PRO Mode",
    price="$9.99/month",
    features=TierFeatures(
        chat_creation=ChatCreationFlags(
            general_mode_only=False,
            subject_specific_chats=True,
            unlimited_general_chats=True,
            max_daily_chats=25,
            available_subjects=ALL_SUBJECTS,
        ),
        chat_access=ChatAccessFlags(
            can_open_all_chats=True,
            can_open_general_chats=True,
            can_open_subject_chats=True,
            can_view_chat_history=True,
        ),
        features=FeatureFlags(
            unlimited_messaging=True,
            content_card_linking=True,
            file_uploads=True,
            chat_linking=True,
            advanced_features=True,
        ),
        ui_restrictions=UiRestrictionFlags(
            show_subject_selection=True,
            show_premium_features=True,
            show_upgrade_prompts=False,
            hide_disabled_subjects=False,
        ),
    ),
)


class TierCatalog:
    """Immutable registry of tier definitions keyed by :class:`TierName`."""

    def __init__(self, definitions: Optional[Mapping[TierName, TierDefinition]] = None) -> None:
        source = definitions if definitions is not None else {_ADVANCED.name: _ADVANCED, _PRO.name: _PRO}
        ordered = {tier: source[tier] for tier in SUPPORTED_TIERS if tier in source}
        self._definitions: Mapping[TierName, TierDefinition] = MappingProxyType(ordered)

    @staticmethod
    def normalize(name: object) -> Optional[TierName]:
        """Return the matching :class:`TierName` (case-insensitive) or ``None``."""

        if isinstance(name, TierName):
            return name
        if not isinstance(name, str):
            return None
        candidate = name.strip().upper()
        try:
            return TierName(candidate)
        except ValueError:
            return None

    def is_valid(self, name: object) -> bool:
        tier = self.normalize(name)
        return tier is not None and tier in self._definitions

    def get(self, name: object) -> TierDefinition:
        tier = self.normalize(name)
        if tier is None or tier not in self._definitions:
            raise InvalidTierNameError(name)
        return self._definitions[tier]

    def all(self) -> List[TierDefinition]:
        return list(self._definitions.values())


DEFAULT_CATALOG = TierCatalog()

__all__ = [
    "ALL_SUBJECTS",
    "ChatAccessFlags",
    "ChatCreationFlags",
    "DEFAULT_CATALOG",
    "FeatureFlags",
    "TierCatalog",
    "TierDefinition",
    "TierFeatures",
    "UiRestrictionFlags",
]
