"""Main CLI entry point for etcdrecover.

This module provides the command-line interface for etcdrecover, a disaster
recovery tool for etcd members running as static pods. It includes commands
for staging backups, stopping and starting etcd, saving and restoring
snapshots, and repairing cluster membership.

Every command maps to one recovery procedure; failures are reported through
the shared error handler and exit non-zero.
"""

import os
from typing import Any, Dict, List, Optional

import click

from etcdrecover import __version__
from etcdrecover.backup.recovery import RecoveryManager
from etcdrecover.config.manager import ConfigManager
from etcdrecover.utils.errors import ErrorHandler
from etcdrecover.utils.logging import setup_logging


def _split_list(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def _recovery_manager(ctx: click.Context) -> RecoveryManager:
    config_manager = ConfigManager()
    config = config_manager.load_config(ctx.obj["config_file"], overrides=ctx.obj["overrides"])
    return RecoveryManager(config, config_manager=config_manager, verbose=ctx.obj["verbose"])


def _print_steps(ctx: click.Context, result: Dict[str, Any]) -> None:
    if ctx.obj["verbose"]:
        for step in result.get("steps_completed", []):
            click.echo(f"  ✓ {step}")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--dry-run", is_flag=True, help="Show what would be done without executing")
@click.option("--log-file", help="Log to file in addition to console")
@click.option("--config", "config_file", help="Path to etcdrecover configuration file")
@click.option("--asset-dir", help="Workspace directory for backups (default: ./assets)")
@click.option("--dial-timeout", type=float, help="Seconds to wait when connecting to etcd")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    dry_run: bool,
    log_file: Optional[str],
    config_file: Optional[str],
    asset_dir: Optional[str],
    dial_timeout: Optional[float],
) -> None:
    """etcdrecover - disaster recovery for etcd static-pod members.

    Stages backups of the etcd manifest, configuration and certificates,
    stops and starts etcd, saves and restores snapshots, and adds or removes
    cluster members.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["dry_run"] = dry_run
    ctx.obj["log_file"] = log_file
    ctx.obj["config_file"] = config_file
    ctx.obj["overrides"] = {"asset_dir": asset_dir, "dial_timeout": dial_timeout}
    ctx.obj["error_handler"] = ErrorHandler(verbose=verbose)

    setup_logging(verbose=verbose, log_file=log_file)


@cli.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create the workspace directory layout."""
    if ctx.obj["dry_run"]:
        click.echo("DRY RUN: Would create the workspace directories")
        return

    try:
        recovery = _recovery_manager(ctx)
        result = recovery.init_workspace()
        click.echo(f"✓ Workspace ready at {recovery.workspace.root}")
        _print_steps(ctx, result)

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Workspace initialization")


@cli.command()
@click.option("--data-dir", "include_data_dir", is_flag=True, help="Also back up the etcd data directory")
@click.pass_context
def backup(ctx: click.Context, include_data_dir: bool) -> None:
    """Back up the etcd manifest, etcd.conf and certificates."""
    if ctx.obj["dry_run"]:
        click.echo("DRY RUN: Would back up manifest, etcd.conf, client certs and etcd certs")
        if include_data_dir:
            click.echo("DRY RUN: Would back up the etcd data directory")
        return

    try:
        recovery = _recovery_manager(ctx)
        result = recovery.backup_all(include_data_dir=include_data_dir)

        click.echo(f"✓ Backups staged in {recovery.workspace.backup_dir}")
        for name, step_result in result["results"].items():
            if isinstance(step_result, dict) and step_result.get("skipped"):
                click.echo(f"  - {name}: already present, skipped")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Backup")


@cli.command()
@click.argument("recovery_server_ip")
@click.argument("member_name")
@click.option("--peer-urls", required=True, help="Comma separated peer URLs for the new member")
@click.pass_context
def addmember(ctx: click.Context, recovery_server_ip: str, member_name: str, peer_urls: str) -> None:
    """Add this host back into the cluster as MEMBER_NAME.

    Backs up the local etcd state, stops the local etcd and registers the
    member with the cluster served from RECOVERY_SERVER_IP.
    """
    urls = _split_list(peer_urls)

    if ctx.obj["dry_run"]:
        click.echo(f"DRY RUN: Would stop etcd and add member {member_name} via {recovery_server_ip}")
        click.echo(f"DRY RUN: Peer URLs: {', '.join(urls)}")
        return

    try:
        recovery = _recovery_manager(ctx)
        result = recovery.add_member(recovery_server_ip, member_name, urls)
        member = result["member"]

        click.echo(f"✓ Added member {member_name} ({member.id:x})")
        click.echo(f"Peer URLs: {', '.join(member.peer_urls)}")
        _print_steps(ctx, result)

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Member add")


@cli.command()
@click.argument("member_name")
@click.option("--endpoints", help="Comma separated endpoint URLs")
@click.pass_context
def delmember(ctx: click.Context, member_name: str, endpoints: Optional[str]) -> None:
    """Remove MEMBER_NAME from the cluster."""
    if ctx.obj["dry_run"]:
        click.echo(f"DRY RUN: Would remove member {member_name}")
        return

    try:
        recovery = _recovery_manager(ctx)
        result = recovery.remove_member(member_name, _split_list(endpoints) or None)
        click.echo(f"✓ Removed member {member_name} ({result['member'].id:x})")
        _print_steps(ctx, result)

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Member remove")


@cli.command()
@click.option("--endpoints", help="Comma separated endpoint URLs")
@click.pass_context
def members(ctx: click.Context, endpoints: Optional[str]) -> None:
    """List cluster members."""
    try:
        recovery = _recovery_manager(ctx)
        for member in recovery.list_members(_split_list(endpoints) or None):
            click.echo(f"{member.id:x}  {member.name or '<unstarted>'}  {','.join(member.peer_urls)}")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Member list")


@cli.command()
@click.argument("filename")
@click.option("--endpoints", help="Endpoint URL of the single member to snapshot")
@click.pass_context
def savesnapshot(ctx: click.Context, filename: str, endpoints: Optional[str]) -> None:
    """Save a snapshot of one member to FILENAME."""
    if ctx.obj["dry_run"]:
        click.echo(f"DRY RUN: Would save snapshot to {filename}")
        return

    try:
        recovery = _recovery_manager(ctx)
        result = recovery.save_snapshot(filename, _split_list(endpoints) or None)
        snapshot = result["snapshot"]
        click.echo(f"✓ Saved snapshot from {snapshot['endpoint']} to {snapshot['path']} ({snapshot['size']} bytes)")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Snapshot save")


@cli.command()
@click.argument("filename")
@click.option("--name", help="Member name (default: ETCD_NAME from etcd.conf)")
@click.option("--initial-cluster", help="Initial cluster (default: ETCD_INITIAL_CLUSTER from etcd.conf)")
@click.option("--initial-cluster-token", help="Initial cluster token")
@click.option("--peer-urls", help="Comma separated peer URLs to advertise")
@click.pass_context
def restore(
    ctx: click.Context,
    filename: str,
    name: Optional[str],
    initial_cluster: Optional[str],
    initial_cluster_token: Optional[str],
    peer_urls: Optional[str],
) -> None:
    """Restore the etcd data directory from snapshot FILENAME.

    Backs up the manifest, configuration, certificates and current data
    directory, stops etcd, replaces the data directory with one restored
    from the snapshot and starts etcd again.
    """
    if ctx.obj["dry_run"]:
        click.echo(f"DRY RUN: Would stop etcd and restore its data directory from {filename}")
        return

    try:
        recovery = _recovery_manager(ctx)
        result = recovery.restore(
            filename,
            name=name,
            initial_cluster=initial_cluster,
            initial_cluster_token=initial_cluster_token,
            peer_urls=_split_list(peer_urls) or None,
        )
        click.echo(f"✓ Restored {recovery.config.data_dir} from {filename} and started etcd")
        _print_steps(ctx, result)

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Snapshot restore")


@cli.command()
@click.option("--all", "all_pods", is_flag=True, help="Stop every static pod and kubelet")
@click.pass_context
def stop(ctx: click.Context, all_pods: bool) -> None:
    """Stop etcd by moving its manifest out of the manifest directory."""
    if ctx.obj["dry_run"]:
        click.echo("DRY RUN: Would stop all static pods and kubelet" if all_pods else "DRY RUN: Would stop etcd")
        return

    try:
        recovery = _recovery_manager(ctx)

        if not all_pods:
            recovery.lifecycle.stop(recovery.config.manifest_name)
            click.echo("✓ etcd stopped")
            return

        result = recovery.stop_static_pods()

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Stop")

    _report_bulk(ctx, result["results"]["stop static pods"], "stopped")


@cli.command()
@click.option("--all", "all_pods", is_flag=True, help="Start every stopped static pod and kubelet")
@click.pass_context
def start(ctx: click.Context, all_pods: bool) -> None:
    """Start etcd by moving its manifest back into the manifest directory."""
    if ctx.obj["dry_run"]:
        click.echo("DRY RUN: Would start all static pods and kubelet" if all_pods else "DRY RUN: Would start etcd")
        return

    try:
        recovery = _recovery_manager(ctx)

        if not all_pods:
            recovery.lifecycle.start(recovery.config.manifest_name)
            click.echo("✓ etcd started")
            return

        result = recovery.start_static_pods()

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Start")

    _report_bulk(ctx, result["results"]["start static pods"], "started")


def _report_bulk(ctx: click.Context, result: Dict[str, Any], verb: str) -> None:
    moved = len(result["moved"])

    if result["success"]:
        click.echo(f"✓ {moved} static pod(s) {verb} and kubelet {verb}")
    else:
        click.echo(f"✗ {moved} static pod(s) {verb}, {len(result['errors'])} failed", err=True)
        for error in result["errors"]:
            click.echo(f"  - {error['name']}: {error['error']}", err=True)
        ctx.exit(1)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show whether etcd is running or stopped."""
    try:
        recovery = _recovery_manager(ctx)
        click.echo(f"etcd: {recovery.lifecycle.state(recovery.config.manifest_name)}")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Status")


@cli.command("regen-certs")
@click.option("--timeout", type=float, help="Maximum seconds to wait for the certificates")
@click.pass_context
def regen_certs(ctx: click.Context, timeout: Optional[float]) -> None:
    """Regenerate etcd certificates with the certificate agent."""
    if ctx.obj["dry_run"]:
        click.echo("DRY RUN: Would back up, remove and regenerate the etcd certificates")
        return

    try:
        recovery = _recovery_manager(ctx)
        result = recovery.regenerate_certs(deadline=timeout)
        polls = result["results"]["wait for certs"]
        click.echo(f"✓ etcd certificates regenerated after {polls} check(s)")
        _print_steps(ctx, result)

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Certificate regeneration")


@cli.command("gen-config")
@click.argument("recovery_server_ip")
@click.option("--cluster-name", default="kubernetes", help="Cluster name in the kubeconfig")
@click.option("--output", "-o", help="Write the kubeconfig to this file instead of stdout")
@click.pass_context
def gen_config(ctx: click.Context, recovery_server_ip: str, cluster_name: str, output: Optional[str]) -> None:
    """Render a kubelet kubeconfig pointing at the recovery API server."""
    try:
        config_manager = ConfigManager()
        config = config_manager.load_config(ctx.obj["config_file"], overrides=ctx.obj["overrides"])
        content = config_manager.render_recovery_kubeconfig(config.backup_dir, recovery_server_ip, cluster_name)

        if not output:
            click.echo(content)
            return

        if ctx.obj["dry_run"]:
            click.echo(f"DRY RUN: Would write kubeconfig to {output}")
            return

        with open(output, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(output, 0o600)
        click.echo(f"✓ Kubeconfig written to {output}")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Kubeconfig generation")


@cli.command()
@click.pass_context
def certs(ctx: click.Context) -> None:
    """Show the backed up etcd client certificates."""
    try:
        recovery = _recovery_manager(ctx)

        for filename in ("etcd-client.crt", "etcd-ca-bundle.crt"):
            info = recovery.certs.describe_certificate(os.path.join(recovery.workspace.backup_dir, filename))
            state = "EXPIRED" if info["expired"] else f"expires in {info['expires_in_days']} days"
            click.echo(f"{filename}: {info['subject']} ({state})")
            if ctx.obj["verbose"]:
                click.echo(f"  Issuer: {info['issuer']}")
                click.echo(f"  Valid: {info['not_valid_before']} - {info['not_valid_after']}")

    except Exception as e:
        ctx.obj["error_handler"].exit_with_error(e, "Certificate inspection")


if __name__ == "__main__":
    cli()
