#!/usr/bin/env python3
"""Quick CLI for a running Concierge server.

Run with: python query_cli.py [--user ID] [--lang CODE] [query ...]

Without a query, runs a sample conversation that walks the cascade stages.
Requires the server to be running on localhost:8000 (uvicorn main:app --port 8000).
"""

import argparse

import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

BASE = "http://localhost:8000"

METHOD_STYLES = {
    "cached": "green",
    "fallback": "green",
    "semantic_search": "cyan",
    "ai_generated": "yellow",
    "final_fallback": "magenta",
    "escalated": "bold red",
    "error_fallback": "red",
}

# One query per stage, roughly
SAMPLE_QUERIES = [
    ("en", "hello"),
    ("en", "hello!"),
    ("am", "help"),
    ("en", "which payment methods do you take?"),
    ("en", "Is breakfast included at hotels in Bahir Dar?"),
    ("en", "xyzzy"),
    ("en", "I want to cancel my booking"),
]


def send_query(client: httpx.Client, query: str, user_id: str, language: str) -> dict | None:
    try:
        r = client.post(
            f"{BASE}/api/query",
            json={"query": query, "user_id": user_id, "language": language},
            timeout=30,
        )
        return r.json()
    except httpx.ConnectError:
        console.print("[red]ERROR: Can't connect. Is the server running?[/red]")
        console.print("Start with: uvicorn main:app --reload --port 8000")
    except httpx.HTTPError as e:
        console.print(f"[red]ERROR: {e}[/red]")
    return None


def show_result(query: str, data: dict) -> None:
    method = data.get("method", "unknown")
    style = METHOD_STYLES.get(method, "white")
    meta = (
        f"[{style}]{method}[/{style}] | {data.get('latency_ms', 0)}ms | "
        f"${data.get('cost', 0):.6f} | tokens {data.get('tokens_used', 0)}"
    )
    if data.get("provider"):
        meta += f" | provider {data['provider']}{' (fallback)' if data.get('fallback_used') else ''}"
    if escalation := data.get("escalation"):
        meta += f" | case {escalation.get('case_id')} ({escalation.get('reason')}, {escalation.get('priority')})"
    console.print(Panel(data.get("response", ""), title=f"[bold]{query}[/bold]", subtitle=meta))


def show_summary(client: httpx.Client) -> None:
    stats = client.get(f"{BASE}/api/stats/optimization").json()
    table = Table(title="Resolution methods")
    table.add_column("Method")
    table.add_column("Count", justify="right")
    for method, count in sorted(stats.get("methods", {}).items()):
        table.add_row(method, str(count))
    console.print(table)
    console.print(
        f"Optimization rate: [bold]{stats.get('optimization_rate', 0)}%[/bold] | "
        f"Total cost: ${stats.get('total_cost', 0):.6f} | "
        f"Cache hit rate: {stats.get('cache', {}).get('hit_rate', 0)}%"
    )


def main():
    parser = argparse.ArgumentParser(description="Send queries to a Concierge server")
    parser.add_argument("query", nargs="*", help="Query text (omit to run the sample conversation)")
    parser.add_argument("--user", default="cli-user", help="User id for the conversation")
    parser.add_argument("--lang", default="en", help="Response language code")
    args = parser.parse_args()

    with httpx.Client() as client:
        console.print("Checking server health...")
        try:
            h = client.get(f"{BASE}/api/health").json()
        except httpx.HTTPError:
            console.print("[red]✗ Server not running. Start it first![/red]")
            return
        console.print(
            f"✓ Server running | Mode: {h['mode']} | Status: {h['status']} | "
            f"Providers: {', '.join(h['providers']) or 'none'}"
        )

        queries = [(args.lang, " ".join(args.query))] if args.query else SAMPLE_QUERIES
        for language, text in queries:
            if data := send_query(client, text, args.user, language):
                show_result(text, data)

        show_summary(client)


if __name__ == "__main__":
    main()
