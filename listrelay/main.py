"""Entry point: delegates to the CLI app (serve, validate-config, processors)."""

from rich.traceback import install

from listrelay.cli import app

if __name__ == "__main__":
    install(show_locals=False, max_frames=5, word_wrap=True)
    app()
