"""Command line interface for the bleflow package."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional

import typer

from .meter.config import DEFAULT_COMMON_NAME
from .meter.payloads import PayloadError, PayloadKind, decode
from .meter.runner import app as meter_app
from .meter.runner import matches_device, replay_command

app = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})
app.add_typer(meter_app, name="meter")
app.command("replay")(replay_command)


def configure_logging(level: str = "INFO") -> None:
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "root": {"handlers": ["default"], "level": level.upper()},
        }
    )


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)."),
) -> None:
    """BLE flow meter decoding tools."""

    if not isinstance(logging.getLevelName(log_level.upper()), int):
        raise typer.BadParameter(f"Unknown log level '{log_level}'", param_hint="--log-level")
    configure_logging(log_level)


@app.command("decode")
def decode_command(
    kind: PayloadKind = typer.Argument(..., case_sensitive=False, help="Payload kind."),
    payload_hex: str = typer.Argument(..., help="Payload bytes as hex, e.g. 00010190."),
) -> None:
    """Decode a single notification payload."""

    try:
        payload = bytes.fromhex(payload_hex.replace(" ", ""))
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid hex payload: {exc}", param_hint="PAYLOAD_HEX") from exc
    try:
        value = decode(kind, payload)
    except PayloadError as exc:
        typer.echo(f"Decode FAILED: {exc}")
        raise typer.Exit(code=1) from exc
    if isinstance(value, tuple):
        typer.echo(f"{kind.value}: {len(value)} samples")
        for sample in value:
            typer.echo(f"{sample:.2f}")
    else:
        typer.echo(f"{kind.value}: {value:.0f}")


@app.command("match")
def match_command(
    name: Optional[str] = typer.Argument(None, help="Advertised BLE device name."),
    common_name: str = typer.Option(DEFAULT_COMMON_NAME, "--common-name", help="Flow meter name prefix."),
) -> None:
    """Check whether an advertised device name belongs to a flow meter."""

    if matches_device(name, common_name):
        typer.echo(f"{name} matches {common_name}")
        return
    typer.echo(f"{name or '<unnamed>'} does not match {common_name}")
    raise typer.Exit(code=1)


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
