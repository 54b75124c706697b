"""app-operator command-line interface.

Commands:
    appctl login -u USER -p PASS                 Store a bearer token.
    appctl deploy --name N --image I --memory-limit M [--min-replicas 1] [--max-replicas 3]
    appctl status NAME                           Show state and available replicas.
    appctl destroy NAME                          Delete the AppDeployment.
    appctl version                               Print version and exit.

All commands except ``login`` and ``version`` call the REST API at
http://localhost:8080 (configurable via ``--api-url``) with the stored token.
"""

from __future__ import annotations

import json

import click
import httpx

from appoperator import __version__
from appoperator.cli.auth import NotLoggedInError, issue_token, load_token, save_token

_DEFAULT_API_URL = "http://localhost:8080"
_TIMEOUT_S = 30.0

_STATE_COLORS: dict[str, str] = {
    "Running": "green",
    "Pending": "yellow",
    "Failed": "red",
}


def _styled_state(state: str) -> str:
    color = _STATE_COLORS.get(state, "white")
    return click.style(state or "Unknown", fg=color, bold=True)


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def _request(api_url: str, method: str, path: str, body: dict[str, object] | None = None) -> dict[str, object]:
    """Call the operator API with the stored token; any failure becomes a ClickException."""
    try:
        token = load_token()
    except NotLoggedInError as exc:
        raise click.ClickException(str(exc)) from exc

    url = api_url.rstrip("/") + path
    try:
        with httpx.Client(timeout=_TIMEOUT_S) as http:
            response = http.request(method, url, json=body, headers={"Authorization": f"Bearer {token}"})
    except httpx.ConnectError as err:
        raise click.ClickException(f"Cannot connect to app-operator API at {api_url}. Is the server running?") from err

    if response.is_error:
        _handle_error_response(response)
    payload: dict[str, object] = response.json()
    return payload


def _handle_error_response(response: httpx.Response) -> None:
    """Raise a ClickException carrying the API's ``error: detail`` pair."""
    try:
        body = response.json()
    except ValueError:
        raise click.ClickException(f"HTTP {response.status_code}: {response.text[:200]}") from None
    raise click.ClickException(f"{body.get('error', 'ERROR')}: {body.get('detail', 'no detail given')}")


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--api-url",
    default=_DEFAULT_API_URL,
    envvar="APPOP_API_URL",
    show_default=True,
    help="app-operator REST API base URL.",
)
@click.pass_context
def cli(ctx: click.Context, api_url: str) -> None:
    """appctl: deploy and inspect AppDeployments."""
    ctx.ensure_object(dict)
    ctx.obj["api_url"] = api_url


@cli.command("version")
def cmd_version() -> None:
    """Print the app-operator version and exit."""
    click.echo(f"app-operator {__version__}")


@cli.command("login")
@click.option("--username", "-u", required=True, help="Username.")
@click.option("--password", "-p", required=True, help="Password.")
def cmd_login(username: str, password: str) -> None:
    """Authenticate and store the bearer token."""
    try:
        token = issue_token(username, password)
    except ValueError as exc:
        raise click.ClickException(f"Login failed: {exc}") from exc
    path = save_token(token)
    click.echo(click.style("Login successful.", fg="green") + f" Token stored in {path}")


@cli.command("deploy")
@click.option("--name", required=True, help="AppDeployment name.")
@click.option("--image", required=True, help="Container image to deploy.")
@click.option("--memory-limit", "memory_limit", required=True, help="Memory limit, e.g. 512Mi.")
@click.option("--min-replicas", default=1, show_default=True, type=int, help="Minimum number of replicas.")
@click.option("--max-replicas", default=3, show_default=True, type=int, help="Maximum number of replicas.")
@click.pass_context
def cmd_deploy(
    ctx: click.Context,
    name: str,
    image: str,
    memory_limit: str,
    min_replicas: int,
    max_replicas: int,
) -> None:
    """Create an AppDeployment."""
    body: dict[str, object] = {
        "name": name,
        "image": image,
        "memoryLimit": memory_limit,
        "minReplicas": min_replicas,
        "maxReplicas": max_replicas,
    }
    click.echo(f"Deploying {name}...")
    data = _request(ctx.obj["api_url"], "POST", "/deploy", body)
    click.echo(click.style("Deployment created.", fg="green") + f" {data.get('message', '')}".rstrip())


@cli.command("status")
@click.argument("name")
@click.option("--json", "output_json", is_flag=True, default=False, help="Print raw JSON response.")
@click.pass_context
def cmd_status(ctx: click.Context, name: str, output_json: bool) -> None:
    """Show the state and available replicas of an AppDeployment."""
    data = _request(ctx.obj["api_url"], "GET", f"/status/{name}")
    if output_json:
        click.echo(json.dumps(data, indent=2))
        return
    state = str(data.get("status", ""))
    click.echo(f"Status: {_styled_state(state)} ({data.get('replicas', 0)} replicas)")


@cli.command("destroy")
@click.argument("name")
@click.pass_context
def cmd_destroy(ctx: click.Context, name: str) -> None:
    """Delete an AppDeployment and its Deployment."""
    _request(ctx.obj["api_url"], "DELETE", f"/{name}")
    click.echo(f"{name} destroyed")
