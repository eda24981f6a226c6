"""List the default processor registry in resolution order."""

from listrelay.processors import build_default_registry

from .shared import console, logger, processor_table


def list_processors() -> None:
    """Print registered processors in the order they are tried."""
    registry = build_default_registry()
    console.print(processor_table(registry))
    logger.debug("processors.listed", processors=registry.names())
