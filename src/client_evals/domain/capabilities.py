"""Client capability declarations captured at initialization."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

ELICITATION = "elicitation"
SAMPLING = "sampling"


@dataclass(frozen=True)
class DeclaredCapabilities:
    """Read-only view over the capabilities a client declared.

    A capability counts as declared when its key is present with a non-null
    value; MCP clients announce support with an (often empty) object.
    """

    raw: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "raw", MappingProxyType(dict(self.raw)))

    @classmethod
    def from_init_params(
        cls, init_params: Mapping[str, object] | None
    ) -> "DeclaredCapabilities":
        """Read the ``capabilities`` entry of MCP initialize params."""
        capabilities = (init_params or {}).get("capabilities")
        return cls(capabilities if isinstance(capabilities, Mapping) else {})

    def supports(self, name: str) -> bool:
        return self.raw.get(name) is not None

    @property
    def elicitation(self) -> bool:
        return self.supports(ELICITATION)

    @property
    def sampling(self) -> bool:
        return self.supports(SAMPLING)
