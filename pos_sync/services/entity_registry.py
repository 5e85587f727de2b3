"""
Entity registry for the offline sync engine.

Every entity kind the client can cache and mutate offline is described here:
its REST collection, the natural key used to recognise a record the server
already has, the business fields that are compared and replayed, fields that
reference other kinds, and subresources such as stock updates.
"""
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from pos_sync.core.exceptions import UnknownEntityError
from pos_sync.schemas.sync import EntityKind, OperationAction, QueuedOperation

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp_"

# Server bookkeeping; never compared, merged or replayed
TECHNICAL_FIELDS: FrozenSet[str] = frozenset({
    "_id", "id", "isTemp", "__v", "createdAt", "updatedAt",
    "version", "createdBy", "updatedBy",
})

VERSION_FIELDS: Tuple[str, ...] = ("__v", "version")

_METHOD_ACTIONS = {
    "POST": OperationAction.CREATE,
    "PUT": OperationAction.UPDATE,
    "PATCH": OperationAction.UPDATE,
    "DELETE": OperationAction.DELETE,
}


def is_temp_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(TEMP_ID_PREFIX)


@dataclass(frozen=True)
class SubresourceSpec:
    """A nested endpoint (``/<id>/<name>``) whose body merges into one field."""
    name: str
    target_field: str
    stamp_field: Optional[str] = None


@dataclass(frozen=True)
class EntitySpec:
    kind: EntityKind
    endpoint: str
    natural_key: str
    fields: FrozenSet[str]
    references: Mapping[str, EntityKind] = field(default_factory=dict)
    subresources: Mapping[str, SubresourceSpec] = field(default_factory=dict)

    @property
    def type_suffix(self) -> str:
        return self.kind.value.upper()


@dataclass(frozen=True)
class OperationDescriptor:
    """What a mutating request does, derived from its method and URL."""
    kind: EntityKind
    action: OperationAction
    type: str
    method: str
    endpoint: str
    target_id: Optional[str] = None
    subresource: Optional[str] = None


_STOCK = SubresourceSpec(name="stock", target_field="stockStatus", stamp_field="lastStockUpdate")

_STOCKED_FIELDS = frozenset({"image", "discountStatus", "stockStatus"})

DEFAULT_SPECS: Tuple[EntitySpec, ...] = (
    EntitySpec(
        kind=EntityKind.CATEGORY,
        endpoint="/api/menu/categories",
        natural_key="categoryName",
        fields=frozenset({"categoryName", "parentCategory", "categoryStatus"}) | _STOCKED_FIELDS,
        subresources={"stock": _STOCK},
    ),
    EntitySpec(
        kind=EntityKind.SUBCATEGORY,
        endpoint="/api/menu/subcategories",
        natural_key="subCategoryName",
        fields=frozenset({"subCategoryName", "category", "subCategoryStatus", "availabilityStatus"})
        | _STOCKED_FIELDS,
        references={"category": EntityKind.CATEGORY},
        subresources={"stock": _STOCK},
    ),
    EntitySpec(
        kind=EntityKind.TABLE_TYPE,
        endpoint="/api/tables/types",
        natural_key="tableTypeName",
        fields=frozenset({"tableTypeName", "tableTypeDescription"}),
    ),
    EntitySpec(
        kind=EntityKind.TABLE,
        endpoint="/api/tables",
        natural_key="tableName",
        fields=frozenset({
            "tableName", "tableDescription", "image", "capacity", "status",
            "tableType", "positionX", "positionY", "sales",
        }),
        references={"tableType": EntityKind.TABLE_TYPE},
    ),
    EntitySpec(
        kind=EntityKind.MENU_PRICING,
        endpoint="/api/menu/pricing",
        natural_key="dish",
        fields=frozenset({"dish", "price", "taxSlab", "taxAmount", "finalPrice", "isAvailable"}),
    ),
    EntitySpec(
        kind=EntityKind.OUTLET,
        endpoint="/api/outlets",
        natural_key="name",
        fields=frozenset({
            "name", "address", "city", "state", "postalCode", "country", "phone",
            "email", "website", "vatNumber", "gstNumber", "logoUrl", "currentStatus",
            "currentOfflineReason", "offlineTimestamp", "isActive", "deliveryRadius",
            "deliveryMinimumOrder", "deliveryFee",
        }),
    ),
    EntitySpec(
        kind=EntityKind.OFFLINE_REASON,
        endpoint="/api/offline-reasons",
        natural_key="reason",
        fields=frozenset({"reason", "description", "isActive"}),
    ),
)


class EntityRegistry:
    """Lookup and payload helpers over a fixed set of entity specs."""

    def __init__(self, specs: Optional[List[EntitySpec]] = None):
        specs = list(specs if specs is not None else DEFAULT_SPECS)
        self._by_kind: Dict[EntityKind, EntitySpec] = {spec.kind: spec for spec in specs}
        # Longest collection path first so /api/tables/types wins over /api/tables
        self._by_endpoint = sorted(specs, key=lambda spec: len(spec.endpoint), reverse=True)

    @property
    def kinds(self) -> List[EntityKind]:
        return list(self._by_kind)

    def spec_for(self, kind: EntityKind) -> EntitySpec:
        try:
            return self._by_kind[EntityKind(kind)]
        except (KeyError, ValueError):
            raise UnknownEntityError(f"Unknown entity kind: {kind}")

    def item_endpoint(self, kind: EntityKind, entity_id: str, subresource: Optional[str] = None) -> str:
        endpoint = f"{self.spec_for(kind).endpoint}/{entity_id}"
        if subresource:
            endpoint = f"{endpoint}/{subresource}"
        return endpoint

    def match_endpoint(self, url: str) -> Optional[Tuple[EntitySpec, List[str]]]:
        """Return the entity spec owning ``url`` and the path segments after its collection."""
        path = urlsplit(url).path.rstrip("/")
        for spec in self._by_endpoint:
            if path == spec.endpoint:
                return spec, []
            if path.startswith(spec.endpoint + "/"):
                return spec, path[len(spec.endpoint) + 1:].split("/")
        return None

    def collection_kind(self, url: str) -> Optional[EntityKind]:
        """Kind whose collection ``url`` addresses, or None for item and unknown URLs."""
        match = self.match_endpoint(url)
        if match and not match[1]:
            return match[0].kind
        return None

    def classify(self, method: str, url: str) -> Optional[OperationDescriptor]:
        """
        Derive the operation a mutating request performs.

        Returns None for reads, unknown endpoints and nested paths that are
        not registered subresources; such requests are never queued.
        """
        method = method.upper()
        action = _METHOD_ACTIONS.get(method)
        match = self.match_endpoint(url)
        if action is None or match is None:
            return None

        spec, segments = match
        endpoint = urlsplit(url).path.rstrip("/")

        if not segments:
            if action != OperationAction.CREATE:
                return None
            return OperationDescriptor(
                kind=spec.kind,
                action=action,
                type=f"CREATE_{spec.type_suffix}",
                method=method,
                endpoint=endpoint,
            )

        target_id = segments[0]
        if len(segments) == 1:
            if action == OperationAction.CREATE:
                return None
            return OperationDescriptor(
                kind=spec.kind,
                action=action,
                type=f"{action.value}_{spec.type_suffix}",
                method=method,
                endpoint=endpoint,
                target_id=target_id,
            )

        if len(segments) == 2 and segments[1] in spec.subresources and action == OperationAction.UPDATE:
            name = segments[1]
            return OperationDescriptor(
                kind=spec.kind,
                action=action,
                type=f"UPDATE_{spec.type_suffix}_{name.upper()}",
                method=method,
                endpoint=endpoint,
                target_id=target_id,
                subresource=name,
            )
        return None

    def business_fields(self, kind: EntityKind, document: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Registry fields present in ``document``."""
        if not document:
            return {}
        spec = self.spec_for(kind)
        return {key: document[key] for key in spec.fields if key in document}

    def snapshot_of(self, kind: EntityKind, document: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Business fields plus the version counter, as assumed by a queued mutation."""
        snapshot = copy.deepcopy(self.business_fields(kind, document))
        for version_field in VERSION_FIELDS:
            if document and version_field in document:
                snapshot[version_field] = document[version_field]
        return snapshot

    def clean_payload(self, kind: EntityKind, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """
        Strip technical fields and flatten embedded references to their ids.

        Populated references (``{"_id": ..., "categoryName": ...}``) come back
        from the server on reads; the write API only accepts the id.
        """
        spec = self.spec_for(kind)
        cleaned = {}
        for key, value in (payload or {}).items():
            if key in TECHNICAL_FIELDS:
                continue
            if key in spec.references and isinstance(value, Mapping):
                value = value.get("_id", value.get("id"))
            cleaned[key] = copy.deepcopy(value)
        return cleaned

    def apply_mutation(
        self,
        kind: EntityKind,
        data: Mapping[str, Any],
        payload: Mapping[str, Any],
        subresource: Optional[str] = None,
        stamp: bool = True,
    ) -> Dict[str, Any]:
        """Return ``data`` with an UPDATE payload applied."""
        result = copy.deepcopy(dict(data))
        if not subresource:
            result.update(copy.deepcopy(dict(payload)))
            return result

        sub = self.spec_for(kind).subresources.get(subresource)
        if sub is None:
            raise UnknownEntityError(f"{kind} has no subresource {subresource}")
        nested = dict(result.get(sub.target_field) or {})
        nested.update(copy.deepcopy(dict(payload)))
        if stamp and sub.stamp_field:
            nested[sub.stamp_field] = datetime.now(timezone.utc).isoformat()
        result[sub.target_field] = nested
        return result

    def touched_fields(self, kind: EntityKind, payload: Mapping[str, Any], subresource: Optional[str] = None) -> List[str]:
        """Top-level business fields an UPDATE payload writes."""
        if subresource:
            return [self.spec_for(kind).subresources[subresource].target_field]
        spec = self.spec_for(kind)
        return sorted(key for key in payload if key in spec.fields)

    def rewrite_references(self, kind: EntityKind, payload: Mapping[str, Any], id_map: Mapping[str, str]) -> Dict[str, Any]:
        """Swap temp ids held in reference fields for their permanent ids."""
        spec = self.spec_for(kind)
        rewritten = dict(payload)
        for key in spec.references:
            value = rewritten.get(key)
            if is_temp_id(value) and value in id_map:
                rewritten[key] = id_map[value]
        return rewritten

    def with_permanent_ids(self, operation: QueuedOperation, id_map: Mapping[str, str]) -> QueuedOperation:
        """
        Copy of ``operation`` addressed at permanent ids.

        The queued row itself is never rewritten.
        """
        if not id_map:
            return operation
        target_id = operation.target_id
        if is_temp_id(target_id) and target_id in id_map:
            target_id = id_map[target_id]
        return operation.model_copy(update={
            "endpoint": rewrite_endpoint(operation.endpoint, id_map),
            "payload": self.rewrite_references(operation.kind, operation.payload, id_map),
            "target_id": target_id,
        })

    def unresolved_references(self, kind: EntityKind, payload: Mapping[str, Any]) -> List[str]:
        spec = self.spec_for(kind)
        return [payload[key] for key in spec.references if is_temp_id(payload.get(key))]

    def natural_key_of(self, kind: EntityKind, document: Mapping[str, Any]) -> Optional[str]:
        value = document.get(self.spec_for(kind).natural_key)
        if isinstance(value, Mapping):
            value = value.get("_id", value.get("id"))
        if value is None:
            return None
        return str(value).strip().lower()


def rewrite_endpoint(endpoint: str, id_map: Mapping[str, str]) -> str:
    """Replace temp id path segments with their permanent ids."""
    segments = endpoint.split("/")
    return "/".join(id_map.get(segment, segment) if is_temp_id(segment) else segment for segment in segments)
