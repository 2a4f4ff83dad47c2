"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from supabase import create_client

from client_evals.adapters.supabase_benchmark_repository import (
    SupabaseBenchmarkRepository,
)
from client_evals.config import Settings
from client_evals.domain.catalog import Catalog
from client_evals.services.context import BenchmarkRepository
from client_evals.services.ranking import RankingService
from client_evals.services.registry import SessionRegistry


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    repository: BenchmarkRepository
    catalog: Catalog
    session_registry: SessionRegistry
    ranking_service: RankingService
    close_resources: Callable[[], Awaitable[None]]


def build_container(settings: Settings | None = None) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    supabase_client = create_client(
        resolved_settings.supabase_url, resolved_settings.supabase_service_key
    )
    repository = SupabaseBenchmarkRepository(supabase_client)
    session_registry = SessionRegistry()

    async def close_resources() -> None:
        session_registry.clear()

    return AppContainer(
        settings=resolved_settings,
        repository=repository,
        catalog=Catalog.default(),
        session_registry=session_registry,
        ranking_service=RankingService(repository),
        close_resources=close_resources,
    )
