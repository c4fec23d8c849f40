"""
Interactive prompts shown during login.

The identity core only notifies; it never depends on what the user does
with a message.
"""

from typing import Protocol

import click
from loguru import logger


class UserInteraction(Protocol):
    """Fire-and-forget notifications consumed by the login flows."""

    def open_url(self, url: str) -> None: ...

    def show_device_code_message(self, user_code: str, verification_url: str) -> None: ...

    def show_error(self, message: str) -> None: ...

    def show_info(self, message: str) -> None: ...


class ConsoleUserInteraction:
    """Terminal implementation using click."""

    def open_url(self, url: str) -> None:
        click.echo("Opening the browser to sign in. If it does not open, visit:")
        click.echo(url)
        try:
            click.launch(url)
        except OSError as e:
            logger.warning(f"Could not launch the browser: {e}")

    def show_device_code_message(self, user_code: str, verification_url: str) -> None:
        click.echo(
            f"To sign in, open {click.style(verification_url, underline=True)} "
            f"and enter the code {click.style(user_code, bold=True)}"
        )

    def show_error(self, message: str) -> None:
        click.echo(click.style(message, fg="red"), err=True)

    def show_info(self, message: str) -> None:
        click.echo(message)
