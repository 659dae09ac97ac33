"""launchpad-submit - submit Expo iOS builds and follow them."""

import asyncio
import sys
from datetime import datetime

import aiohttp
import click

from launchpad_engine.client import LaunchpadAPIError, LaunchpadClient, wait_for_completion

STATUS_LABELS = {
    "queued": "⏳ Queued",
    "building": "🔨 Building",
    "uploading": "📤 Uploading",
    "done": "✅ Done",
    "failed": "❌ Failed",
}


def _format_status(status: str) -> str:
    return STATUS_LABELS.get(status, status)


def _format_time(value: str) -> str:
    try:
        return datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return value


def _fail(message: str) -> None:
    click.echo(click.style(message, fg="red"), err=True)
    sys.exit(1)


def _run(coro):
    try:
        return asyncio.run(coro)
    except LaunchpadAPIError as e:
        _fail(f"Error: {e}")
    except aiohttp.ClientError as e:
        _fail(f"Error: could not reach LaunchPad API: {e}")


@click.group()
def cli():
    """launchpad-submit - build Expo apps and upload them to App Store Connect"""
    pass


# ---------------- iOS ----------------
@cli.command()
@click.option("--project", "project_path", required=True, help="Path to Expo project")
@click.option("--version", "version", required=True, help="App version (e.g., 1.0.0)")
@click.option("--build", "build_number", required=True, help="Build number")
@click.option("--profile", default="production", show_default=True, help="Build profile name")
@click.option("--message", default=None, help="Release notes / message")
@click.option("--wait", is_flag=True, default=False, help="Wait for job completion")
@click.option("--timeout", default=60, show_default=True, type=int, help="Minutes to wait with --wait")
def ios(project_path, version, build_number, profile, message, wait, timeout):
    """Submit iOS app to App Store Connect"""

    async def submit():
        async with LaunchpadClient() as client:
            job_id = await client.create_ios_job(project_path, version, build_number, profile, message)
            click.echo(f"✅ Job created: {job_id}")
            click.echo(f"\n  Check status: launchpad-submit status {job_id}")
            click.echo(f"  View logs: launchpad-submit logs {job_id}\n")
            if not wait:
                return None

            click.echo("Waiting for job completion...")
            last = {"status": None}

            def on_update(status):
                if status.get("status") != last["status"]:
                    last["status"] = status.get("status")
                    click.echo(f"  Status: {_format_status(last['status'])}")

            return await wait_for_completion(
                client.get_job_status, job_id, timeout=timeout * 60, on_update=on_update
            )

    outcome = _run(submit())
    if outcome is None:
        return

    if outcome.outcome == "done":
        click.echo(click.style("✅ Build completed and uploaded successfully!", fg="green"))
        if outcome.status.get("artifactPath"):
            click.echo(f"\n  Artifact: {outcome.status['artifactPath']}\n")
    elif outcome.outcome == "failed":
        _fail(f"❌ Build failed\n\n  Error: {outcome.status.get('error', 'unknown error')}\n")
    elif outcome.outcome == "timeout":
        _fail(f"Job timed out after {timeout} minutes (it may still be running)")
    else:
        _fail("Job not found (it may have expired)")


# ---------------- Status ----------------
@cli.command()
@click.argument("job_id")
def status(job_id):
    """Check the status of a build job"""

    async def fetch():
        async with LaunchpadClient() as client:
            return await client.get_job_status(job_id)

    data = _run(fetch())
    if data is None:
        _fail(f"Job not found: {job_id}")

    click.echo()
    click.echo(click.style("Job Status", bold=True))
    click.echo("─" * 40)
    click.echo(f"  Job ID:     {data['jobId']}")
    click.echo(f"  Status:     {_format_status(data['status'])}")
    if data.get("startedAt"):
        click.echo(f"  Started:    {_format_time(data['startedAt'])}")
    if data.get("finishedAt"):
        click.echo(f"  Finished:   {_format_time(data['finishedAt'])}")
    if data.get("artifactPath"):
        click.echo(f"  Artifact:   {data['artifactPath']}")
    if data.get("error"):
        click.echo(f"  Error:      {click.style(data['error'], fg='red')}")
    click.echo()

    if data["status"] == "failed":
        sys.exit(1)


# ---------------- Logs ----------------
@cli.command()
@click.argument("job_id")
def logs(job_id):
    """View logs for a build job"""

    async def fetch():
        async with LaunchpadClient() as client:
            return await client.get_job_logs(job_id)

    content = _run(fetch())
    if content is None:
        _fail(f"Job not found or no logs available: {job_id}")

    if not content.strip():
        click.echo("No logs available yet.")
        return

    click.echo()
    click.echo(click.style(f"Logs for job: {job_id}", bold=True))
    click.echo("─" * 60)
    click.echo(content)


def main():
    cli()


if __name__ == "__main__":
    main()
