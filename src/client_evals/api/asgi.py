"""ASGI entrypoint for the client evals server."""

from client_evals.api.app import create_app
from client_evals.containers import build_container

app = create_app(build_container())
