#!/usr/bin/env python3
"""
streamsync CLI - inspect and nudge stream processing status.
"""

import argparse
import os
import sys

import httpx
from rich.console import Console
from rich.table import Table

from api.errors import truncate_error
from cli.poll_trigger import ClientPollTrigger, PollTriggerError
from config import (
    ADMIN_API_SECRET,
    API_PORT,
    CLIENT_POLL_INITIAL_DELAY,
    CLIENT_POLL_INTERVAL,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
)

console = Console()


class CLIError(Exception):
    """Error raised by CLI operations."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def non_negative_float(value: str) -> float:
    f = float(value)
    if f < 0:
        raise argparse.ArgumentTypeError(f"must not be negative, got {f}")
    return f


# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("STREAMSYNC_API_TIMEOUT", "30"))

# API URL - can override host and port, or use the port from config
_default_api_url = f"http://localhost:{API_PORT}"
API_BASE = os.getenv("STREAMSYNC_API_URL", _default_api_url).rstrip("/") + "/api"


def safe_json_response(response, default_error="Request failed"):
    """
    Safely parse JSON response with proper error handling.

    Raises:
        CLIError: If response status is not successful or JSON parsing fails
    """
    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def get_admin_headers() -> dict:
    """Get headers for admin API requests."""
    headers = {}
    if ADMIN_API_SECRET:
        headers["X-Admin-Secret"] = ADMIN_API_SECRET
    return headers


def handle_auth_error(response) -> None:
    """Exit with a helpful message on 401."""
    if response.status_code == 401:
        print("Error: Authentication required.")
        print("The API requires authentication. Set STREAMSYNC_ADMIN_API_SECRET environment variable.")
        sys.exit(1)


def api_client() -> httpx.Client:
    return httpx.Client(base_url=API_BASE, headers=get_admin_headers(), timeout=DEFAULT_API_TIMEOUT)


def run_command(func):
    """Run a command body with the shared connection/CLIError handling."""
    try:
        func()
    except httpx.ConnectError:
        print(f"Error: Could not connect to API at {API_BASE}")
        print("Make sure the streamsync API is running.")
        sys.exit(1)
    except httpx.TimeoutException:
        print(f"Error: Request timed out while connecting to {API_BASE}")
        sys.exit(1)
    except (CLIError, PollTriggerError) as e:
        print(f"Error: {e}")
        sys.exit(1)


def _status_style(status: str) -> str:
    return {
        "ready": "green",
        "error": "red",
        "processing": "yellow",
        "uploading": "cyan",
    }.get(status, "white")


def _print_sync_result(result: dict) -> None:
    old_status = result["old_status"]
    new_status = result["new_status"]
    arrow = f"{old_status} -> [{_status_style(new_status)}]{new_status}[/]"
    line = f"Video {result['video_id']}: {arrow} ({result['outcome']})"
    if result.get("remote_state"):
        line += f" remote={result['remote_state']}"
    console.print(line)
    if result.get("error"):
        console.print(f"  [red]{result['error']}[/red]")


def cmd_upload_slot(args):
    """Request a direct upload URL."""

    def body():
        payload = {"title": args.title or ""}
        if args.max_duration:
            payload["max_duration_seconds"] = args.max_duration
        if args.origin:
            payload["allowed_origins"] = args.origin
        if args.public:
            payload["require_signed_urls"] = False

        with api_client() as client:
            response = client.post("/uploads", json=payload)
        handle_auth_error(response)
        result = safe_json_response(response)
        print("Upload slot created.")
        print(f"  Video ID: {result['video_id']}")
        print(f"  Remote asset: {result['remote_asset_id']}")
        print(f"  Upload URL: {result['upload_url']}")

    run_command(body)


def cmd_list(args):
    """List records still uploading or processing."""

    def body():
        with api_client() as client:
            response = client.get("/video-processing/processing")
        handle_auth_error(response)
        result = safe_json_response(response)
        videos = result.get("videos", [])

        if not videos:
            print("No videos are processing.")
            return

        table = Table(title=f"Processing ({result.get('count', len(videos))})")
        table.add_column("ID", justify="right")
        table.add_column("Status")
        table.add_column("Title")
        table.add_column("Remote asset")
        table.add_column("Created")
        for v in videos:
            title = v["title"][:38] + ".." if len(v["title"]) > 40 else v["title"]
            status = v["processing_status"]
            table.add_row(
                str(v["id"]),
                f"[{_status_style(status)}]{status}[/]",
                title or "-",
                v.get("remote_asset_id") or "-",
                (v.get("created_at") or "-")[:19],
            )
        console.print(table)

    run_command(body)


def cmd_sync(args):
    """Reconcile one video now."""

    def body():
        with api_client() as client:
            response = client.post("/video-processing/sync-single", json={"videoId": args.video_id})
        handle_auth_error(response)
        _print_sync_result(safe_json_response(response))

    run_command(body)


def cmd_sync_all(args):
    """Reconcile every uploading/processing video once."""

    def body():
        with api_client() as client:
            response = client.post("/video-processing/sync-all")
        handle_auth_error(response)
        result = safe_json_response(response)
        for detail in result.get("details", []):
            _print_sync_result(detail)
        print(
            f"Reconciled {result['total']} videos: "
            f"{result['updated']} updated, {result['unchanged']} unchanged, {result['failed']} failed"
        )

    run_command(body)


def cmd_retry(args):
    """Move an errored video back to uploading."""

    def body():
        with api_client() as client:
            response = client.post(f"/videos/{args.video_id}/retry")
        handle_auth_error(response)
        result = safe_json_response(response)
        print(f"Video {result['id']} is {result['processing_status']} again; the engine will pick it up.")

    run_command(body)


def cmd_watch(args):
    """Poll one video until it leaves uploading/processing."""

    def on_update(record, result):
        if result:
            _print_sync_result(result)
        else:
            status = record["processing_status"]
            console.print(f"Video {record['id']}: [{_status_style(status)}]{status}[/] (poll failed, retrying)")

    def body():
        with api_client() as client:
            trigger = ClientPollTrigger(
                client,
                args.video_id,
                initial_delay=args.initial_delay,
                interval=args.interval,
                max_polls=args.max_polls,
                on_update=on_update,
            )
            handle_auth_error(client.get(f"/videos/{args.video_id}"))
            record = trigger.run()

        status = record["processing_status"]
        console.print(f"Video {record['id']} is [{_status_style(status)}]{status}[/] after {trigger.polls} polls")
        if record.get("error_message"):
            console.print(f"  [red]{record.get('error_code') or 'error'}: {record['error_message']}[/red]")

    try:
        run_command(body)
    except KeyboardInterrupt:
        print("\nStopped watching.")


def cmd_signed_url(args):
    """Issue a playback URL for a ready video."""

    def body():
        payload = {"videoId": args.video_id, "subscriptionTier": args.tier, "format": args.format}
        if args.required_tier:
            payload["requiredTier"] = args.required_tier
        with api_client() as client:
            response = client.post("/video/signed-url", json=payload)
        handle_auth_error(response)
        result = safe_json_response(response)
        print(result["url"])
        if result.get("expires_at"):
            print(f"  Expires: {result['expires_at']} ({result.get('expires_in')}s)", file=sys.stderr)

    run_command(body)


def main():
    parser = argparse.ArgumentParser(prog="streamsync", description="streamsync CLI - stream processing status")
    subparsers = parser.add_subparsers(dest="command", required=True)

    upload_parser = subparsers.add_parser("upload-slot", help="Request a direct upload URL")
    upload_parser.add_argument("-t", "--title", help="Video title")
    upload_parser.add_argument("--max-duration", type=positive_int, help="Maximum duration in seconds")
    upload_parser.add_argument("--origin", action="append", help="Allowed origin (repeatable)")
    upload_parser.add_argument("--public", action="store_true", help="Do not require signed playback URLs")
    upload_parser.set_defaults(func=cmd_upload_slot)

    list_parser = subparsers.add_parser("list", help="List videos still uploading or processing")
    list_parser.set_defaults(func=cmd_list)

    sync_parser = subparsers.add_parser("sync", help="Reconcile one video now")
    sync_parser.add_argument("video_id", type=positive_int, help="Video ID")
    sync_parser.set_defaults(func=cmd_sync)

    sync_all_parser = subparsers.add_parser("sync-all", help="Reconcile every processing video once")
    sync_all_parser.set_defaults(func=cmd_sync_all)

    retry_parser = subparsers.add_parser("retry", help="Retry a video in error")
    retry_parser.add_argument("video_id", type=positive_int, help="Video ID")
    retry_parser.set_defaults(func=cmd_retry)

    watch_parser = subparsers.add_parser("watch", help="Poll a video until it is ready or fails")
    watch_parser.add_argument("video_id", type=positive_int, help="Video ID")
    watch_parser.add_argument(
        "--initial-delay",
        type=non_negative_float,
        default=CLIENT_POLL_INITIAL_DELAY,
        help=f"Seconds before the first poll (default: {CLIENT_POLL_INITIAL_DELAY:g})",
    )
    watch_parser.add_argument(
        "--interval",
        type=non_negative_float,
        default=CLIENT_POLL_INTERVAL,
        help=f"Seconds between polls (default: {CLIENT_POLL_INTERVAL:g})",
    )
    watch_parser.add_argument("--max-polls", type=positive_int, help="Give up after this many polls")
    watch_parser.set_defaults(func=cmd_watch)

    url_parser = subparsers.add_parser("signed-url", help="Issue a playback URL")
    url_parser.add_argument("video_id", type=positive_int, help="Video ID")
    url_parser.add_argument(
        "--tier",
        choices=["beginner", "intermediate", "advanced"],
        default="beginner",
        help="Subscriber tier (sets URL lifetime)",
    )
    url_parser.add_argument(
        "--required-tier", choices=["beginner", "intermediate", "advanced"], help="Tier the video requires"
    )
    url_parser.add_argument("--format", choices=["hls", "mp4"], default="hls", help="Playback format")
    url_parser.set_defaults(func=cmd_signed_url)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
