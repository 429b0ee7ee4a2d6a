"""Factory for creating remote directory implementations."""

from typing import Dict, Type

from bqls.core.bigquery_directory import BigQueryDirectory
from bqls.core.cli_directory import BigQueryCliDirectory
from bqls.core.remote_directory import RemoteDirectory


# Registry mapping backend names to their directory classes
_DIRECTORY_REGISTRY: Dict[str, Type[RemoteDirectory]] = {
    "api": BigQueryDirectory,
    "cli": BigQueryCliDirectory,
    "bq": BigQueryCliDirectory,  # Alias
}


def create_remote_directory(backend: str) -> RemoteDirectory:
    """Create a remote directory for the given backend name.

    Args:
        backend: "api" (google-cloud-bigquery) or "cli" (bq/gcloud tools).
                Case-insensitive.

    Returns:
        A new RemoteDirectory. Each call returns a fresh instance; the caller
        owns it and must close() it.

    Raises:
        NotImplementedError: If the backend is not supported.
    """
    normalized = backend.lower().strip()
    directory_class = _DIRECTORY_REGISTRY.get(normalized)

    if directory_class is None:
        supported = ", ".join(sorted(_DIRECTORY_REGISTRY.keys()))
        raise NotImplementedError(
            f"Remote backend '{backend}' is not supported. "
            f"Supported backends: {supported}"
        )

    return directory_class()
