"""CLI commands: one module per command (serve, validate-config, processors)."""

from typer import Typer

from listrelay.cli import processors as processors_module, serve, validate_config as validate_config_module

app = Typer(help="SharePoint list notifications relayed to UiPath queues")


def register_commands() -> None:
    """Register all CLI commands on the global app."""
    app.command()(serve.serve)
    app.command(name="validate-config")(validate_config_module.validate_config)
    app.command(name="processors")(processors_module.list_processors)


register_commands()
