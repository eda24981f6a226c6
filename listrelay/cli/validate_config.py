"""Validate configuration: required credentials for both providers, queue settings, processors."""

from listrelay.config import (
    AZURE_CLIENT_ID,
    AZURE_CLIENT_SECRET,
    AZURE_TENANT_ID,
    UIPATH_ENABLED,
)
from listrelay.processors import build_default_registry
from listrelay.routing.environment import ENVIRONMENT_PRESETS, default_queue_settings

from .shared import console, logger, processor_table


def validate_config() -> None:
    """Check environment for Graph and UiPath, print processors and presets, exit 1 on gaps."""
    log = logger.bind(command="validate-config")
    log.info("validate_config.start")

    errors = []
    graph = {
        "AZURE_TENANT_ID": AZURE_TENANT_ID,
        "AZURE_CLIENT_ID": AZURE_CLIENT_ID,
        "AZURE_CLIENT_SECRET": AZURE_CLIENT_SECRET,
    }
    errors.extend(f"Missing {name}" for name, value in graph.items() if not value)

    settings = default_queue_settings()
    if UIPATH_ENABLED:
        errors.extend(f"UIPATH_ENABLED is true but {name} is not set" for name in settings.missing())

    if errors:
        for msg in errors:
            console.print(f"[red]{msg}[/red]")
        log.error("validate_config.validation_failed", errors=errors)
        raise SystemExit(1)

    from rich.table import Table

    registry = build_default_registry()
    console.print(processor_table(registry))

    presets = Table(title="Environment presets")
    presets.add_column("env", style="cyan")
    presets.add_column("Tenant", style="green")
    presets.add_column("Organization unit", justify="right")
    presets.add_column("Orchestrator URL")
    for name in sorted(ENVIRONMENT_PRESETS):
        preset = ENVIRONMENT_PRESETS[name]
        presets.add_row(
            name,
            preset.tenant_name or "(default)",
            preset.organization_unit_id or "(default)",
            preset.orchestrator_url or "(default)",
        )
    console.print(presets)

    state = "enabled" if UIPATH_ENABLED else "disabled"
    console.print(
        f"[green]Config valid. {len(registry.names())} processors, queue submission {state}, "
        f"default queue {settings.default_queue or '(none)'}.[/green]"
    )
    log.info("validate_config.ok", processors=len(registry.names()), uipath_enabled=UIPATH_ENABLED)
