#!/usr/bin/env python3
"""
CLI tool for the load balancer membership operator
Provides a kubectl-like interface for inspecting and nudging scopes
"""

import json
import time

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = "http://localhost:8000/api/v1"


class MembershipOperatorCLI:
    """CLI client for the membership operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, timeout=30, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if getattr(e, "response", None) is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except ValueError:
                    click.echo(f"Response: {e.response.text}", err=True)
            return None

    def stream_events(self, scope=None):
        """Yield (event_type, payload) pairs from the SSE endpoint"""
        params = {"scope": scope} if scope else None
        with requests.get(
            f"{self.base_url}/events", params=params, stream=True, timeout=None
        ) as response:
            response.raise_for_status()
            event_type = None
            for line in response.iter_lines(decode_unicode=True):
                if not line:
                    continue
                if line.startswith("event: "):
                    event_type = line[len("event: ") :]
                elif line.startswith("data: "):
                    yield event_type, json.loads(line[len("data: ") :])


def _result_summary(result):
    if not result:
        return "-"
    return f"{result['kind']}: {result['message']}"


@click.group()
@click.option(
    "--api-url",
    envvar="LBCTL_API_URL",
    default=API_BASE_URL,
    show_default=True,
    help="Base URL of the operator API",
)
@click.pass_context
def cli(ctx, api_url):
    """Membership operator CLI - inspect and trigger load balancer reconciliation"""
    ctx.obj = MembershipOperatorCLI(api_url)


@cli.command()
@click.option("--follow", "-f", is_flag=True, help="Follow status updates")
@click.option("--interval", "-i", default=5, help="Polling interval in seconds")
@click.pass_obj
def status(client, follow, interval):
    """Show status of every scope"""

    def show_status():
        result = client._make_request("GET", "/scopes")
        if result is None:
            return
        headers = ["Scope", "Pool", "State", "Failures", "Last Reconcile", "Last Result"]
        rows = []
        for scope in result:
            if scope["halted"]:
                state = "halted"
            elif scope["processing"]:
                state = "reconciling"
            elif scope["retry_scheduled"]:
                state = "backoff"
            else:
                state = "idle"
            rows.append(
                [
                    scope["scope_key"],
                    scope["pool_id"] or "<unset>",
                    state,
                    scope["failures"],
                    scope.get("last_reconcile_time") or "Never",
                    _result_summary(scope.get("last_result")),
                ]
            )
        if follow:
            click.clear()
        click.echo(tabulate(rows, headers=headers, tablefmt="grid"))

    show_status()

    if follow:
        try:
            while True:
                time.sleep(interval)
                show_status()
        except KeyboardInterrupt:
            click.echo("\nStopped following")


@cli.command()
@click.argument("scope_key")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="json")
@click.pass_obj
def describe(client, scope_key, output):
    """Describe a scope, including its last reconciliation result"""
    result = client._make_request("GET", f"/scopes/{scope_key}")

    if result:
        if output == "yaml":
            click.echo(yaml.safe_dump(result, default_flow_style=False))
        else:
            click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("scope_key")
@click.option("--machine", "-m", default=None, help="Machine that changed")
@click.option(
    "--reason",
    "-r",
    type=click.Choice(["added", "updated", "deleted", "manual"]),
    default="manual",
)
@click.pass_obj
def reconcile(client, scope_key, machine, reason):
    """Trigger reconciliation for a scope"""
    payload = {"reason": reason}
    if machine:
        payload["machine_name"] = machine

    result = client._make_request(
        "POST", f"/scopes/{scope_key}/triggers", json=payload
    )

    if result:
        click.echo("Reconciliation triggered successfully")


@cli.command()
@click.argument("scope_key")
@click.pass_obj
def resume(client, scope_key):
    """Resume a scope halted by a fatal error"""
    result = client._make_request("POST", f"/scopes/{scope_key}/resume")

    if result:
        click.echo(result["message"])


@cli.command()
@click.option("--scope", "-s", default=None, help="Only show events for this scope")
@click.pass_obj
def watch(client, scope):
    """Stream reconciliation events"""
    try:
        for event_type, payload in client.stream_events(scope):
            data = payload.get("data", {})
            line = f"{payload['timestamp']}  {event_type:<10}  {payload['scope_key']}"
            if data.get("message"):
                line += f"  {data['message']}"
            if event_type == "RETRYING":
                line += f" (retry in {data.get('retry_in')}s, attempt {data.get('attempt')})"
            click.echo(line)
    except requests.exceptions.RequestException as e:
        click.echo(f"Error: {e}", err=True)
    except KeyboardInterrupt:
        click.echo("\nStopped watching")


if __name__ == "__main__":
    cli()
