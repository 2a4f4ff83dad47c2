"""Static restaurant catalog used by the benchmark scenario."""

import base64
from dataclasses import dataclass


@dataclass(frozen=True)
class CatalogOption:
    """A selectable restaurant menu."""

    id: str
    name: str
    description: str


RESTAURANT_DATA: dict[str, tuple[CatalogOption, ...]] = {
    "Sushi": (
        CatalogOption("sushi-1", "Tokyo Sushi Bar", "Authentic Edomae-style sushi."),
        CatalogOption("sushi-2", "Kyoto Sushi House", "Modern fusion sushi rolls."),
    ),
    "Pizza": (
        CatalogOption(
            "pizza-1", "Napoli Pizza Place", "Classic Neapolitan wood-fired pizza."
        ),
        CatalogOption(
            "pizza-2", "Chicago Deep Dish", "Hearty and cheesy deep-dish pizza."
        ),
    ),
    "Vegan": (
        CatalogOption("vegan-1", "Green Earth Cafe", "Plant-based comfort food."),
        CatalogOption(
            "vegan-2", "The V-Spot", "Creative and delicious vegan cuisine."
        ),
    ),
}


@dataclass(frozen=True)
class Catalog:
    """Read-only lookup over the restaurant data.

    Option ids handed to clients are derived from the session id, so a client
    has to read the catalog of its own session rather than guess ids.
    """

    data: dict[str, tuple[CatalogOption, ...]]

    @classmethod
    def default(cls) -> "Catalog":
        return cls(RESTAURANT_DATA)

    def categories(self) -> list[str]:
        """Return the available food categories."""
        return list(self.data)

    def has_category(self, category: str) -> bool:
        return category in self.data

    def options_for(self, session_id: str, category: str) -> list[CatalogOption]:
        """Return the category's options with session-specific ids."""
        return [
            CatalogOption(
                id=obfuscate_id(session_id, option.id),
                name=option.name,
                description=option.description,
            )
            for option in self.data.get(category, ())
        ]

    def find_option(
        self, session_id: str, category: str, option_id: str
    ) -> CatalogOption | None:
        """Resolve a session-specific option id, if it belongs to the category."""
        for option in self.options_for(session_id, category):
            if option.id == option_id:
                return option
        return None


def obfuscate_id(session_id: str, option_id: str) -> str:
    """Build the deterministic, opaque id shown to one session."""
    raw = f"{session_id}:{option_id}".encode()
    return base64.urlsafe_b64encode(raw).decode("ascii")
