#!/usr/bin/env python3
"""
Back office login CLI - drive the login and password reset flows from a terminal

Usage:
    python cli.py --help
    python cli.py login -e user@site.com
    python cli.py login-code -e user@site.com
    python cli.py reset-password -e user@site.com
"""

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
import typer
from rich.console import Console
from rich.panel import Panel

from authflow.core.config import settings
from authflow.core.logging_config import configure_logging
from authflow.schemas.auth import AuthMode, FlowResult
from authflow.services.auth_controller import AuthController
from authflow.services.identity import GoTrueIdentityProvider, RestAccountStatusStore
from authflow.services.otp_client import OTPServiceClient

app = typer.Typer(help="Back office login CLI")
console = Console()


# ============================================================================
# Pretty Printing
# ============================================================================

def print_error(message: str):
    """Print error message."""
    console.print(f"[red]✗ Error:[/red] {message}", style="bold")


def print_success(message: str):
    """Print success message."""
    console.print(f"[green]✓ Success:[/green] {message}", style="bold")


def print_result(result: FlowResult):
    if not result.message:
        return
    if result.ok:
        print_success(result.message)
    else:
        print_error(result.message)


def format_time(seconds: int) -> str:
    return f"{seconds // 60}:{seconds % 60:02d}"


# ============================================================================
# Controller wiring
# ============================================================================

@asynccontextmanager
async def build_controller() -> AsyncIterator[AuthController]:
    """Controller wired to the configured backend, sharing one HTTP client."""
    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
        controller = AuthController(
            identity=GoTrueIdentityProvider(client=client),
            status_store=RestAccountStatusStore(client=client),
            otp_service=OTPServiceClient(client=client),
            on_navigate=lambda target: console.print(
                Panel(f"Redirecting to [bold]{target}[/bold]", border_style="green")
            ),
        )
        try:
            yield controller
        finally:
            await controller.close()


async def prompt_code(
    controller: AuthController,
    verify: Callable[[str], Awaitable[FlowResult]],
    resend: Callable[[], Awaitable[FlowResult]],
) -> FlowResult | None:
    """Ask for codes until one clears, the user cancels, or the flow leaves the mode."""
    mode = controller.mode
    while controller.mode == mode:
        remaining = controller.time_remaining
        hint = f" (expires in {format_time(remaining)})" if remaining else ""
        resend_hint = "r to resend, " if controller.can_resend else ""
        answer = typer.prompt(f"6-digit code{hint}; {resend_hint}c to cancel").strip().lower()

        if answer == "c":
            controller.cancel()
            console.print("[yellow]Cancelled[/yellow]")
            return None
        if answer == "r":
            print_result(await resend())
            continue

        result = await verify(answer)
        print_result(result)
        if result.ok or controller.mode != mode:
            return result
    return None


# ============================================================================
# Commands
# ============================================================================

@app.command()
def login(
    email: str = typer.Option(None, "--email", "-e"),
    password: str = typer.Option(None, "--password", "-p"),
):
    """Sign in with email and password, then confirm with an emailed code."""
    configure_logging()
    if not email:
        email = typer.prompt("Email")
    if not password:
        password = typer.prompt("Password", hide_input=True)

    async def run():
        async with build_controller() as controller:
            console.print("\n[bold cyan]Checking credentials...[/bold cyan]\n")
            result = await controller.submit_password(email, password)
            print_result(result)
            if controller.mode != AuthMode.PASSWORD_OTP_VERIFY:
                raise typer.Exit(1)
            await prompt_code(controller, controller.verify_password_otp, controller.resend_password_otp)

    asyncio.run(run())


@app.command("login-code")
def login_code(email: str = typer.Option(None, "--email", "-e")):
    """Sign in with an emailed code only."""
    configure_logging()
    if not email:
        email = typer.prompt("Email")

    async def run():
        async with build_controller() as controller:
            controller.choose_code_login()
            result = await controller.request_login_code(email)
            print_result(result)
            if controller.mode != AuthMode.OTP_VERIFY:
                raise typer.Exit(1)
            await prompt_code(controller, controller.verify_login_code, controller.resend_login_code)

    asyncio.run(run())


@app.command("reset-password")
def reset_password(email: str = typer.Option(None, "--email", "-e")):
    """Reset a forgotten password with an emailed code."""
    configure_logging()
    if not email:
        email = typer.prompt("Email")

    async def run():
        async with build_controller() as controller:
            controller.forgot_password()
            result = await controller.request_reset_code(email)
            print_result(result)
            if controller.mode != AuthMode.FORGOT_PASSWORD_OTP:
                raise typer.Exit(1)

            verified = await prompt_code(controller, controller.verify_reset_code, controller.resend_reset_code)
            if verified is None or controller.mode != AuthMode.RESET_PASSWORD:
                raise typer.Exit(1)

            while controller.mode == AuthMode.RESET_PASSWORD:
                new_password = typer.prompt("New password", hide_input=True)
                confirm_password = typer.prompt("Confirm new password", hide_input=True)
                result = await controller.submit_new_password(new_password, confirm_password)
                print_result(result)
                if not result.ok and result.error not in ("password_mismatch", "weak_password"):
                    raise typer.Exit(1)

    asyncio.run(run())


if __name__ == "__main__":
    app()
