#!/usr/bin/env python3
"""
GeoClips CLI - admin commands for tag, video and user cleanup and counter repair.
"""

import argparse
import os
import sys

import httpx
from rich.console import Console
from rich.table import Table

from api.errors import truncate_string
from config import ADMIN_API_SECRET, ADMIN_PORT, ERROR_DETAIL_MAX_LENGTH, ERROR_SUMMARY_MAX_LENGTH

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("GEOCLIPS_API_TIMEOUT", "30"))

# Admin API URL - can override host and port, or use the port from config
_default_api_url = f"http://localhost:{ADMIN_PORT}"
API_BASE = os.getenv("GEOCLIPS_ADMIN_API_URL", _default_api_url).rstrip("/") + "/api"

COUNTER_CHOICES = ("views", "likes", "comments")

console = Console()


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def get_admin_headers() -> dict:
    """Get headers for admin API requests."""
    headers = {}
    if ADMIN_API_SECRET:
        headers["X-Admin-Secret"] = ADMIN_API_SECRET
    return headers


def safe_json_response(response, default_error="Request failed"):
    """
    Parse a JSON response, raising CLIError for HTTP or parse failures.

    Batch endpoints answer 500 with a full result body when every item failed;
    that body is still returned so the per-item errors can be shown.
    """
    if response.status_code == 401:
        raise CLIError("Authentication required. Set GEOCLIPS_ADMIN_API_SECRET.")
    if response.status_code == 403:
        raise CLIError("Authentication failed - check GEOCLIPS_ADMIN_API_SECRET matches the server.")

    try:
        data = response.json()
    except ValueError:
        if not response.is_success:
            detail = truncate_string(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
            raise CLIError(f"API error ({response.status_code}): {detail}")
        raise CLIError(f"Invalid JSON response: {truncate_string(response.text, ERROR_SUMMARY_MAX_LENGTH)}")

    if not response.is_success and not (isinstance(data, dict) and "status" in data):
        detail = data.get("detail", default_error) if isinstance(data, dict) else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")
    return data


def api_request(method: str, path: str, **kwargs):
    response = httpx.request(
        method, f"{API_BASE}{path}", headers=get_admin_headers(), timeout=DEFAULT_API_TIMEOUT, **kwargs
    )
    return safe_json_response(response)


def print_batch_errors(result: dict) -> None:
    errors = result.get("errors") or []
    if not errors:
        return
    table = Table(title="Errors")
    table.add_column("Item")
    table.add_column("Error", style="red")
    for err in errors:
        table.add_row(str(err.get("item", "")), str(err.get("error", "")))
    console.print(table)


def check_batch(result: dict) -> None:
    """Show per-item errors and fail the command when the whole batch failed."""
    print_batch_errors(result)
    status = result.get("status")
    if status == "failed":
        raise CLIError("All items failed")
    if status == "partial":
        console.print("[yellow]Completed with errors[/yellow]")


# ============ Commands ============


def cmd_tags(args):
    if args.tags_command == "list":
        tags = api_request("GET", "/tags")
        if not tags:
            console.print("No tags found.")
            return
        table = Table()
        table.add_column("ID", justify="right")
        table.add_column("Name")
        table.add_column("Usage", justify="right")
        for t in tags:
            table.add_row(str(t["id"]), t["name"], str(t["usage_count"]))
        console.print(table)

    elif args.tags_command == "delete":
        result = api_request("POST", "/tags/bulk/delete", json={"tag_ids": args.tag_ids})
        console.print(
            f"Deleted {result['deleted_count']} tag(s) and {result['deleted_connections']} video link(s)."
        )
        check_batch(result)

    elif args.tags_command == "reconcile":
        body = {"dry_run": args.dry_run}
        if args.tag_ids:
            body["tag_ids"] = args.tag_ids
        result = api_request("POST", "/tags/reconcile", json=body)
        print_reconcile(result)


def cmd_videos(args):
    if args.videos_command == "delete":
        result = api_request("POST", "/videos/bulk/delete", json={"video_ids": args.video_ids})
        console.print(
            f"Deleted {result['deleted_count']} video(s); adjusted {result['updated_tags']} tag counter(s)."
        )
        check_batch(result)

    elif args.videos_command == "reconcile":
        body = {"counter": args.counter, "dry_run": args.dry_run}
        if args.video_ids:
            body["video_ids"] = args.video_ids
        result = api_request("POST", "/videos/reconcile", json=body)
        print_reconcile(result)


def cmd_users(args):
    if args.users_command == "delete":
        result = api_request("DELETE", f"/users/{args.user_id}")
        console.print(f"User {args.user_id} deleted with {result['deleted_videos']} video(s).")
        check_batch(result)


def print_reconcile(result: dict) -> None:
    verb = "Would correct" if result.get("dry_run") else "Corrected"
    console.print(
        f"{verb} {result['updated_count']} of {result['checked']} {result['counter']} value(s)."
    )
    if result.get("results"):
        table = Table()
        table.add_column("ID", justify="right")
        table.add_column("Before", justify="right")
        table.add_column("After", justify="right")
        for row in result["results"]:
            table.add_row(str(row["id"]), str(row["before"]), str(row["after"]))
        console.print(table)
    check_batch(result)


def run(args) -> int:
    """Dispatch a parsed command, mapping failures to exit code 1."""
    try:
        args.func(args)
    except httpx.ConnectError:
        console.print(f"[red]Error:[/red] Could not connect to admin API at {API_BASE}")
        return 1
    except httpx.TimeoutException:
        console.print(f"[red]Error:[/red] Request timed out while connecting to {API_BASE}")
        return 1
    except CLIError as e:
        console.print(f"[red]Error:[/red] {e}")
        return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="geoclips", description="GeoClips admin CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Tags
    tags_parser = subparsers.add_parser("tags", help="List, delete and reconcile tags")
    tags_sub = tags_parser.add_subparsers(dest="tags_command", required=True)
    tags_sub.add_parser("list", help="List tags by usage")
    tags_delete = tags_sub.add_parser("delete", help="Delete tags and all their video links")
    tags_delete.add_argument("tag_ids", nargs="+", type=positive_int, help="Tag IDs")
    tags_reconcile = tags_sub.add_parser("reconcile", help="Recompute usage_count from video links")
    tags_reconcile.add_argument("tag_ids", nargs="*", type=positive_int, help="Tag IDs (default: all)")
    tags_reconcile.add_argument("--dry-run", action="store_true", help="Report drift without writing")
    tags_parser.set_defaults(func=cmd_tags)

    # Videos
    videos_parser = subparsers.add_parser("videos", help="Delete videos and reconcile their counters")
    videos_sub = videos_parser.add_subparsers(dest="videos_command", required=True)
    videos_delete = videos_sub.add_parser("delete", help="Delete videos with their links and facts")
    videos_delete.add_argument("video_ids", nargs="+", type=positive_int, help="Video IDs")
    videos_reconcile = videos_sub.add_parser("reconcile", help="Recompute a video counter from its fact table")
    videos_reconcile.add_argument("--counter", choices=COUNTER_CHOICES, default="views", help="Counter to repair")
    videos_reconcile.add_argument("video_ids", nargs="*", type=positive_int, help="Video IDs (default: all)")
    videos_reconcile.add_argument("--dry-run", action="store_true", help="Report drift without writing")
    videos_parser.set_defaults(func=cmd_videos)

    # Users
    users_parser = subparsers.add_parser("users", help="Delete users")
    users_sub = users_parser.add_subparsers(dest="users_command", required=True)
    users_delete = users_sub.add_parser("delete", help="Delete a user and everything they own")
    users_delete.add_argument("user_id", type=positive_int, help="User ID")
    users_parser.set_defaults(func=cmd_users)

    return parser


def main():
    args = build_parser().parse_args()
    sys.exit(run(args))


if __name__ == "__main__":
    main()
