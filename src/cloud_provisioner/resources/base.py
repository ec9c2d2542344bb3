"""Base resource class for cloud resources."""

from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, computed_field

from cloud_provisioner.resources.markers import Compare, Reference, collect_references

# Fields that steer the engine rather than describe the resource.
LIFECYCLE_FIELDS: frozenset[str] = frozenset({"address", "depends_on", "prevent_destroy"})


class Resource(BaseModel):
    """Base class for all cloud resources.

    Resources are pure data - they define the desired state.
    Handlers know how to CRUD resources.
    """

    model_config = ConfigDict(extra="forbid")

    kind: ClassVar[str]
    # Fields the provider assigns on create (e.g. ``id``); referencable but never declared.
    outputs: ClassVar[tuple[str, ...]] = ("id",)
    # Whether an immutable-field change may be carried out as delete + create.
    replace_on_change: ClassVar[bool] = True

    name: str = Field(pattern=r"^[a-zA-Z0-9_-]+$")
    tags: Annotated[dict[str, str], Compare("exact")] = Field(default_factory=dict)

    # Lifecycle
    depends_on: list[str] = []
    prevent_destroy: bool = False

    def attributes(self) -> dict[str, Any]:
        """Declared attribute values, references left unresolved."""
        return self.model_dump(exclude_none=True, exclude=set(LIFECYCLE_FIELDS))

    def references(self) -> list[Reference]:
        """References to other resources found in this resource's attributes."""
        return collect_references(self.attributes())

    @classmethod
    def has_field(cls, field: str) -> bool:
        """Whether *field* can be the target of a reference."""
        return field in cls.outputs or (
            field in cls.model_fields and field not in LIFECYCLE_FIELDS
        )

    @computed_field
    @property
    def address(self) -> str:
        """Unique address for this resource (e.g., 'instance.web')."""
        return f"{self.kind}.{self.name}"
