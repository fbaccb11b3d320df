#!/usr/bin/env python3
"""
CLI tool for the OpenSearch operator.

Provides a kubectl-like view of managed clusters through the operator API.
"""

import json
import os

import click
import requests
import yaml
from tabulate import tabulate

API_BASE_URL = os.getenv("OPERATOR_API_URL", "http://localhost:8080/api/v1")


class OperatorCLI:
    """CLI client for the operator API"""

    def __init__(self, base_url: str = API_BASE_URL):
        self.base_url = base_url

    def _make_request(self, method: str, endpoint: str, **kwargs):
        """Make HTTP request to the API"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            click.echo(f"Error: {e}", err=True)
            if hasattr(e, "response") and e.response is not None:
                try:
                    error_detail = e.response.json()
                    click.echo(f"Detail: {error_detail}", err=True)
                except (ValueError, json.JSONDecodeError):
                    click.echo(f"Response: {e.response.text}", err=True)
            return None


def _split_key(key: str):
    namespace, sep, name = key.partition("/")
    if not sep or not namespace or not name:
        raise click.BadParameter("expected NAMESPACE/NAME")
    return namespace, name


@click.group()
@click.option("--api-url", default=API_BASE_URL, help="Operator API base URL")
@click.pass_context
def cli(ctx, api_url):
    """OpenSearch operator CLI - inspect and nudge managed clusters"""
    ctx.obj = OperatorCLI(api_url)


@cli.command()
@click.option("--namespace", "-n", default=None, help="Only list this namespace")
@click.option("--output", "-o", type=click.Choice(["table", "json"]), default="table")
@click.pass_obj
def get(client, namespace, output):
    """List managed clusters"""
    params = {"namespace": namespace} if namespace else None
    result = client._make_request("GET", "/clusters", params=params)
    if result is None:
        raise SystemExit(1)

    if output == "json":
        click.echo(json.dumps(result, indent=2))
        return

    headers = ["Namespace", "Name", "Phase", "Initialized", "Deleting"]
    rows = [
        [
            c["namespace"],
            c["name"],
            c.get("phase") or "-",
            "✓" if c.get("initialized") else "✗",
            "yes" if c.get("deleting") else "",
        ]
        for c in result
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("key")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
@click.pass_obj
def describe(client, key, output):
    """Describe a cluster given as NAMESPACE/NAME"""
    namespace, name = _split_key(key)
    result = client._make_request("GET", f"/clusters/{namespace}/{name}")
    if result is None:
        raise SystemExit(1)

    if output == "yaml":
        click.echo(yaml.safe_dump(result, default_flow_style=False))
    else:
        click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("key")
@click.pass_obj
def reconcile(client, key):
    """Manually trigger reconciliation for NAMESPACE/NAME"""
    namespace, name = _split_key(key)
    result = client._make_request("POST", f"/clusters/{namespace}/{name}/reconcile")
    if result is None:
        raise SystemExit(1)
    click.echo(f"Reconciliation of {result['cluster']} queued")


if __name__ == "__main__":
    cli()
