# Entity_Registry.py
# Description: Entity descriptors that parameterize the gateway and the reconcilers.
#
# Imports
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Any
#
# Local Imports
from clinic_sync.Constants import TEMP_ID_PREFIX
#
#######################################################################################################################
#
# Functions:

# Keys that only make sense locally and never go over the wire.
LOCAL_ONLY_KEYS = ("id", "tempId", "syncStatus", "isDeleted", "deletedAt", "lastModified", "syncError")


def default_serializer(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k not in LOCAL_ONLY_KEYS}


def generate_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(TEMP_ID_PREFIX)


@dataclass(frozen=True)
class EntityDescriptor:
    """
    Describes one entity type to the sync engine.

    Attributes:
        name: Type tag used in the sync queue (e.g. "patient").
        table: Local store table.
        endpoint: REST collection path (e.g. "/patients").
        references: Payload field -> referenced entity name (e.g. {"patientId": "patient"}).
        serializer: Turns a local payload into the body sent to the server.
    """
    name: str
    table: str
    endpoint: str
    references: Dict[str, str] = field(default_factory=dict)
    serializer: Callable[[Dict[str, Any]], Dict[str, Any]] = default_serializer


class EntityRegistry:
    """Ordered collection of descriptors. Order is push order: parents before dependents."""

    def __init__(self, descriptors: Optional[List[EntityDescriptor]] = None):
        self._descriptors: Dict[str, EntityDescriptor] = {}
        for descriptor in descriptors or []:
            self.register(descriptor)

    def register(self, descriptor: EntityDescriptor):
        if descriptor.name in self._descriptors:
            raise ValueError(f"Entity '{descriptor.name}' is already registered")
        for ref_field, ref_entity in descriptor.references.items():
            if ref_entity not in self._descriptors and ref_entity != descriptor.name:
                raise ValueError(
                    f"Entity '{descriptor.name}' references '{ref_entity}' via '{ref_field}', "
                    f"which must be registered first")
        self._descriptors[descriptor.name] = descriptor

    def get(self, name: str) -> EntityDescriptor:
        try:
            return self._descriptors[name]
        except KeyError:
            raise KeyError(f"Unknown entity type: {name!r}") from None

    def __contains__(self, name: str) -> bool:
        return name in self._descriptors

    def __iter__(self) -> Iterator[EntityDescriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)

    @property
    def names(self) -> List[str]:
        return list(self._descriptors)

    @property
    def tables(self) -> List[str]:
        return [d.table for d in self._descriptors.values()]


def unresolved_reference(descriptor: EntityDescriptor, data: Optional[Dict[str, Any]],
                         get_record: Callable[[str, str], Optional[Dict[str, Any]]],
                         registry: Optional[EntityRegistry] = None) -> Optional[str]:
    """
    Returns the first reference field of `data` that points at a record the server has
    not confirmed yet (a temp id), or None. Without a registry only the id shape is checked.
    """
    for ref_field, ref_entity in descriptor.references.items():
        value = (data or {}).get(ref_field)
        if not value:
            continue
        if registry is None or ref_entity not in registry:
            if is_temp_id(value):
                return ref_field
            continue
        ref_row = get_record(registry.get(ref_entity).table, str(value))
        if (ref_row is not None and ref_row["temp_id"]) or (ref_row is None and is_temp_id(value)):
            return ref_field
    return None


def default_registry() -> EntityRegistry:
    """The clinic's entity types, in dependency order."""
    return EntityRegistry([
        EntityDescriptor(name="patient", table="patients", endpoint="/patients"),
        EntityDescriptor(name="medicament", table="medicaments", endpoint="/medicaments"),
        EntityDescriptor(name="consultation", table="consultations", endpoint="/consultations",
                         references={"patientId": "patient"}),
        EntityDescriptor(name="vaccination", table="vaccinations", endpoint="/vaccinations",
                         references={"patientId": "patient"}),
        EntityDescriptor(name="rendez-vous", table="rendez_vous", endpoint="/rendez-vous",
                         references={"patientId": "patient"}),
    ])

#
# End of Entity_Registry.py
#######################################################################################################################
