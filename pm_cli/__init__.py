"""Command-line client for the project management API.

``pm`` talks to the REST API with a Cognito ID token; ``pm-admin`` covers the
control plane (stack outputs, Cognito users). Built on Typer and Rich; command
payloads stay machine-friendly with ``--json``.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
