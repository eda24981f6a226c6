"""Shared CLI helpers: console, logger, processor table."""

from rich.console import Console
from rich.table import Table

from listrelay.routing.registry import ProcessorRegistry
from listrelay.utils.logger import get_logger

console = Console()
logger = get_logger("listrelay.cli")


def processor_table(registry: ProcessorRegistry) -> Table:
    """Registered processors in resolution order."""
    table = Table(title="Processors (first match wins)")
    table.add_column("#", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Description", style="green")
    for position, descriptor in enumerate(registry.descriptors(), start=1):
        table.add_row(str(position), descriptor.name, descriptor.description)
    return table
