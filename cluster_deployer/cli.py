"""Main CLI entry point for cluster deployment."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cluster_deployer.exceptions import ClusterDeployerError, UserCancelledError
from cluster_deployer.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="cluster-deploy",
    help="Deploy and manage kubeadm clusters on bare machines",
    add_completion=False,
)
cluster_app = typer.Typer(help="Create, update and inspect clusters", add_completion=False)
node_app = typer.Typer(help="Add, remove and inspect cluster nodes", add_completion=False)
app.add_typer(cluster_app, name="cluster")
app.add_typer(node_app, name="node")

console = Console()
logger = get_logger(__name__)

CONFIRM_TOKEN = "yes"

FILE_OPTION = typer.Option(..., "--file", "-f", help="Path to the cluster YAML file")
YES_OPTION = typer.Option(False, "--yes", "-y", help="Answer yes to confirmation prompts")


# Global callback to set up logging
@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


def confirm(prompt: str) -> bool:
    return typer.confirm(prompt, default=False)


def confirm_dangerous(prompt: str) -> bool:
    """Only the literal token counts as consent; --yes never bypasses this."""
    console.print(f"[bold red]Warning:[/bold red] {escape(prompt)}")
    answer = typer.prompt(f"Type '{CONFIRM_TOKEN}' to continue", default="", show_default=False)
    return answer.strip() == CONFIRM_TOKEN


def echo(message: str) -> None:
    if message.startswith("Warning:"):
        console.print(f"[yellow]{escape(message)}[/yellow]")
    else:
        console.print(escape(message))


def make_context(auto_confirm: bool = False):
    from cluster_deployer.context import CommandContext

    return CommandContext(
        auto_confirm=auto_confirm,
        confirm=confirm,
        confirm_dangerous=confirm_dangerous,
        echo=echo,
    )


@contextmanager
def handle_errors(action: str) -> Iterator[None]:
    """Map exceptions to exit codes and rich error output."""
    try:
        yield
    except typer.Exit:
        raise
    except UserCancelledError as e:
        console.print(f"[yellow]{escape(e.message)}[/yellow]")
        raise typer.Exit(code=0)
    except ClusterDeployerError as e:
        logger.error(f"{action} failed: {e.message}")
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        if e.details:
            console.print(f"\n{escape(e.details)}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print(f"\n[yellow]{action} interrupted by user[/yellow]")
        raise typer.Exit(code=130)
    except Exception as e:
        logger.error(f"Unexpected error during {action}: {e}", exc_info=True)
        console.print(f"[red]Unexpected error:[/red] {escape(str(e))}")
        console.print("\nRun with --verbose --log-file debug.log for more details")
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show version information."""
    from cluster_deployer import __version__

    typer.echo(f"cluster-deployer version {__version__}")


def _nodes_table(config) -> Table:
    table = Table(title=f"Cluster {config.name}")
    table.add_column("Hostname", style="cyan")
    table.add_column("IP", style="magenta")
    table.add_column("Role", style="green")
    table.add_column("GPU")
    table.add_column("SSH", style="yellow")
    for node in config.spec.nodes:
        auth = "password" if node.ssh.uses_password else (node.ssh.key_file or "managed key")
        table.add_row(
            node.hostname,
            node.ip,
            node.role,
            "yes" if node.gpu else "",
            f"{node.ssh.user}@{node.ssh.port} ({auth})",
        )
    return table


@cluster_app.command("create")
def cluster_create(
    config_file: Path = FILE_OPTION,
    skip_ssh_setup: bool = typer.Option(False, "--skip-ssh-setup", help="Skip SSH key setup"),
    force_ssh_setup: bool = typer.Option(
        False, "--force-ssh-setup", help="Regenerate and push SSH keys even if already set up"
    ),
    yes: bool = YES_OPTION,
) -> None:
    """
    Create a new cluster from a cluster description.

    Password-based nodes are switched to a managed root key first, every
    node's hosts file is updated, then the cluster is bootstrapped.
    """
    from cluster_deployer.config_file import ClusterFile
    from cluster_deployer.hosts import setup_hosts_files
    from cluster_deployer.loader import load_cluster_config
    from cluster_deployer.sequencer import BootstrapSequencer
    from cluster_deployer.ssh_setup import needs_key_setup, setup_ssh_keys

    with handle_errors("Cluster creation"):
        config = load_cluster_config(config_file)
        ctx = make_context(auto_confirm=yes)
        console.print(_nodes_table(config))

        if skip_ssh_setup:
            console.print("[yellow]Skipping SSH key setup[/yellow]")
        elif force_ssh_setup or needs_key_setup(config):
            console.print("[bold cyan]Setting up SSH keys[/bold cyan]")
            config = setup_ssh_keys(ctx, config, force=force_ssh_setup)
            rewritten = ClusterFile(config_file).switch_to_managed_keys(ctx.settings.managed_key_file)
            console.print(f"[green]✓[/green] SSH keys installed ({rewritten} node(s) switched to key login)")

        console.print("[bold cyan]Updating hosts files[/bold cyan]")
        setup_hosts_files(ctx, config)

        result = BootstrapSequencer(ctx, config).run()

        console.print(f"\n[green]✓[/green] Cluster [bold]{config.name}[/bold] deployed")
        console.print(f"  API endpoint: https://{result.endpoint}")
        console.print(f"  Masters: {len(config.masters())}  Workers: {len(config.workers())}")
        if not result.persisted:
            console.print("  [yellow]Configuration record not saved; 'cluster update' cannot diff[/yellow]")
        console.print("\nNext steps:")
        console.print("  $ kubectl get nodes")
        console.print("  $ kubectl -n kube-system get pods -l k8s-app=cilium")


@cluster_app.command("update")
def cluster_update(
    config_file: Path = FILE_OPTION,
    only_bgp: bool = typer.Option(False, "--only-bgp", help="Only update BGP configuration"),
    yes: bool = YES_OPTION,
) -> None:
    """
    Apply a revised cluster description to a running cluster.

    Uses the local kubectl; immutable fields (name, subnets, version) cannot change.
    """
    from cluster_deployer.loader import load_cluster_config
    from cluster_deployer.reconcile import Reconciler

    with handle_errors("Cluster update"):
        config = load_cluster_config(config_file, check_key_files=False)
        ctx = make_context(auto_confirm=yes)
        with ctx.open_local_channel() as channel:
            result = Reconciler(ctx, channel).run(config, only_bgp=only_bgp)

        if not result.changes:
            return

        table = Table(title="Configuration changes")
        table.add_column("Kind", style="cyan")
        table.add_column("Change")
        table.add_column("Old", style="red")
        table.add_column("New", style="green")
        table.add_column("Component", style="magenta")
        for change in result.changes:
            table.add_row(
                change.kind,
                change.description,
                change.old_value,
                change.new_value,
                change.affected_component + (" (restart)" if change.requires_restart else ""),
            )
        console.print(table)

        for kind in result.applied_kinds:
            console.print(f"[green]✓[/green] Applied {kind} changes")
        for kind in result.unapplied_kinds:
            console.print(f"[yellow]⚠[/yellow] {kind} changes recorded but not applied automatically")
        if not result.persisted:
            console.print("[yellow]Warning:[/yellow] stored configuration record was not updated")


@cluster_app.command("info")
def cluster_info() -> None:
    """Show deployment metadata stored in the cluster."""
    from cluster_deployer.state_store import ClusterStateStore

    with handle_errors("Cluster info"):
        ctx = make_context()
        with ctx.open_local_channel() as channel:
            info = ClusterStateStore(channel).cluster_info()

        table = Table(title="Cluster deployment")
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="green")
        for key in ("cluster-name", "deployed-at", "updated-at", "tool-version"):
            table.add_row(key, info.get(key) or "-")
        console.print(table)


@cluster_app.command("kubeconfig")
def cluster_kubeconfig(
    config_file: Path = FILE_OPTION,
    install: bool = typer.Option(
        False, "--install", help="Write to ~/.kube/config instead of printing"
    ),
) -> None:
    """Print (or install) the admin kubeconfig from the first master."""
    from cluster_deployer.kubeconfig import fetch_admin_kubeconfig, install_kubeconfig
    from cluster_deployer.loader import load_cluster_config

    with handle_errors("Kubeconfig retrieval"):
        config = load_cluster_config(config_file)
        ctx = make_context()
        with ctx.open_channel(config.first_master()) as channel:
            content = fetch_admin_kubeconfig(channel)

        if install:
            path = install_kubeconfig(content, config.name)
            console.print(f"[green]✓[/green] Kubeconfig written to {path}")
        else:
            typer.echo(content, nl=False)


@cluster_app.command("status")
def cluster_status(
    show_pods: bool = typer.Option(False, "--pods", "-p", help="Show pod information"),
    namespace: str | None = typer.Option(
        None, "--namespace", "-n", help="Filter pods by namespace (requires --pods)"
    ),
) -> None:
    """
    Show cluster status and node health using the local kubeconfig.

    Examples:
        cluster-deploy cluster status
        cluster-deploy cluster status --pods --namespace kube-system
    """
    from datetime import datetime

    from kubernetes import client, config
    from kubernetes.client.rest import ApiException

    from cluster_deployer.exceptions import KubernetesError

    with handle_errors("Status check"):
        try:
            config.load_kube_config()
        except Exception as e:
            raise KubernetesError(
                f"Failed to load kubeconfig: {e}",
                "Run 'cluster-deploy cluster kubeconfig -f FILE --install' first",
            ) from e

        v1 = client.CoreV1Api()
        try:
            version_info = client.VersionApi().get_code()
            console.print(f"[bold cyan]Cluster Version:[/bold cyan] {version_info.git_version}")
        except ApiException:
            console.print("[yellow]Warning:[/yellow] Could not retrieve cluster version")

        try:
            nodes = v1.list_node()
        except ApiException as e:
            raise KubernetesError("Failed to list nodes", str(e)) from e

        if not nodes.items:
            console.print("[yellow]No nodes found in the cluster[/yellow]")
            return

        console.print(f"\n[bold cyan]Cluster Nodes ({len(nodes.items)}):[/bold cyan]")
        nodes_table = Table()
        nodes_table.add_column("Name", style="cyan")
        nodes_table.add_column("Role", style="magenta")
        nodes_table.add_column("Status", style="green")
        nodes_table.add_column("Version", style="blue")
        nodes_table.add_column("Internal IP", style="yellow")
        nodes_table.add_column("Managed")
        nodes_table.add_column("Age")

        from cluster_deployer.state_store import MANAGED_LABEL

        ready_nodes = 0
        for node in sorted(nodes.items, key=lambda n: n.metadata.name):
            labels = node.metadata.labels or {}
            if "node-role.kubernetes.io/control-plane" in labels:
                role = "Control Plane"
            elif labels.get("gpu") == "on":
                role = "GPU Worker"
            else:
                role = "Worker"

            conditions = node.status.conditions or []
            ready = any(c.type == "Ready" and c.status == "True" for c in conditions)
            ready_nodes += ready
            status = "[green]✓ Ready[/green]" if ready else "[red]✗ NotReady[/red]"

            addresses = node.status.addresses or []
            internal_ip = next((a.address for a in addresses if a.type == "InternalIP"), "N/A")

            created = node.metadata.creation_timestamp
            age = datetime.now(created.tzinfo) - created
            age_str = f"{age.days}d" if age.days > 0 else f"{age.seconds // 3600}h"

            nodes_table.add_row(
                node.metadata.name,
                role,
                status,
                node.status.node_info.kubelet_version,
                internal_ip,
                "yes" if labels.get(MANAGED_LABEL) == "true" else "no",
                age_str,
            )
        console.print(nodes_table)

        if show_pods:
            try:
                if namespace:
                    pods = v1.list_namespaced_pod(namespace)
                else:
                    pods = v1.list_pod_for_all_namespaces()
            except ApiException as e:
                raise KubernetesError("Failed to list pods", str(e)) from e

            pods_table = Table(title="Pods")
            pods_table.add_column("Namespace", style="cyan")
            pods_table.add_column("Name", style="magenta")
            pods_table.add_column("Node", style="yellow")
            pods_table.add_column("Status", style="green")
            pods_table.add_column("Restarts")
            for pod in sorted(pods.items, key=lambda p: (p.metadata.namespace, p.metadata.name)):
                restarts = sum(cs.restart_count for cs in (pod.status.container_statuses or []))
                pods_table.add_row(
                    pod.metadata.namespace,
                    pod.metadata.name,
                    pod.spec.node_name or "N/A",
                    pod.status.phase or "Unknown",
                    str(restarts),
                )
            console.print(pods_table)

        console.print("\n[bold]Summary:[/bold]")
        console.print(f"  Total Nodes: {len(nodes.items)}")
        console.print(f"  Ready Nodes: {ready_nodes}")
        if ready_nodes == len(nodes.items):
            console.print("\n[green]✓ All nodes are ready[/green]")
        else:
            console.print("\n[yellow]⚠ Some nodes are not ready[/yellow]")


@node_app.command("add")
def node_add(
    config_file: Path = FILE_OPTION,
    ip: str = typer.Option(..., "--ip", help="IP address of the new node"),
    role: str = typer.Option("worker", "--role", "-r", help="Node role: master or worker"),
    hostname: str | None = typer.Option(None, "--hostname", help="Hostname (derived if omitted)"),
    gpu: bool = typer.Option(False, "--gpu", help="Node has an NVIDIA GPU"),
    user: str = typer.Option("root", "--user", "-u", help="SSH user"),
    port: int = typer.Option(22, "--port", help="SSH port"),
    key_file: str | None = typer.Option(None, "--key-file", help="SSH private key"),
    password: str | None = typer.Option(None, "--password", help="SSH password"),
    yes: bool = YES_OPTION,
) -> None:
    """
    Provision a machine, join it to the cluster and record it in the cluster file.
    """
    from pydantic import ValidationError

    from cluster_deployer.config_file import ClusterFile
    from cluster_deployer.loader import load_cluster_config
    from cluster_deployer.models import NodeDescriptor, SSHCredential
    from cluster_deployer.nodes import add_node

    try:
        node = NodeDescriptor(
            role=role,
            ip=ip,
            hostname=hostname or "",
            gpu=gpu,
            ssh=SSHCredential(user=user, port=port, key_file=key_file or "", password=password or ""),
        )
    except ValidationError as e:
        console.print("[red]Validation Error:[/red]")
        for error in e.errors():
            field = ".".join(str(x) for x in error["loc"])
            console.print(f"  - {field}: {error['msg']}")
        raise typer.Exit(code=1)

    with handle_errors("Node add"):
        config = load_cluster_config(config_file)
        ctx = make_context(auto_confirm=yes)
        if not ctx.ask(f"Add {ip} to cluster {config.name} as {role}?"):
            raise UserCancelledError("Node add cancelled")

        updated = add_node(ctx, config, node)
        added = updated.spec.nodes[-1]
        ClusterFile(config_file).add_node(added)

        console.print(f"[green]✓[/green] Node '{added.hostname}' joined the cluster")
        console.print(f"  Role: {added.role}")
        console.print(f"  IP: {added.ip}")
        if added.gpu:
            console.print("  GPU: Enabled")


@node_app.command("remove")
def node_remove(
    hostname: str = typer.Argument(..., help="Hostname of the node to remove"),
    config_file: Path = FILE_OPTION,
    reset: bool = typer.Option(False, "--reset", help="Run 'kubeadm reset' on the node afterwards"),
    force: bool = typer.Option(False, "--force", help="Skip confirmation prompt"),
) -> None:
    """Drain and delete a node, then remove it from the cluster file."""
    from cluster_deployer.config_file import ClusterFile
    from cluster_deployer.loader import load_cluster_config
    from cluster_deployer.nodes import remove_node

    with handle_errors("Node removal"):
        config = load_cluster_config(config_file)
        node = config.find_node(hostname)
        if node is not None and not force:
            console.print(f"[yellow]Warning:[/yellow] About to remove node '{hostname}'")
            console.print(f"  Role: {node.role}")
            console.print(f"  IP: {node.ip}")
            if not confirm("Are you sure you want to continue?"):
                raise UserCancelledError("Operation cancelled")

        ctx = make_context(auto_confirm=force)
        remove_node(ctx, config, hostname, reset=reset)
        ClusterFile(config_file).remove_node(hostname, ip=node.ip if node else None)
        console.print(f"[green]✓[/green] Removed node '{hostname}'")


@node_app.command("list")
def node_list(config_file: Path = FILE_OPTION) -> None:
    """List cluster nodes as seen by the API server."""
    from cluster_deployer.loader import load_cluster_config
    from cluster_deployer.nodes import list_nodes

    with handle_errors("Node listing"):
        config = load_cluster_config(config_file)
        typer.echo(list_nodes(make_context(), config), nl=False)


@node_app.command("describe")
def node_describe(
    hostname: str = typer.Argument(..., help="Node to describe"),
    config_file: Path = FILE_OPTION,
) -> None:
    """Show 'kubectl describe node' output."""
    from cluster_deployer.loader import load_cluster_config
    from cluster_deployer.nodes import describe_node

    with handle_errors("Node describe"):
        config = load_cluster_config(config_file)
        typer.echo(describe_node(make_context(), config, hostname), nl=False)


@node_app.command("cordon")
def node_cordon(
    hostname: str = typer.Argument(..., help="Node to mark unschedulable"),
    config_file: Path = FILE_OPTION,
) -> None:
    """Mark a node unschedulable."""
    from cluster_deployer.loader import load_cluster_config
    from cluster_deployer.nodes import cordon_node

    with handle_errors("Node cordon"):
        config = load_cluster_config(config_file)
        cordon_node(make_context(), config, hostname)
        console.print(f"[green]✓[/green] Node '{hostname}' cordoned")


@node_app.command("uncordon")
def node_uncordon(
    hostname: str = typer.Argument(..., help="Node to mark schedulable"),
    config_file: Path = FILE_OPTION,
) -> None:
    """Mark a node schedulable again."""
    from cluster_deployer.loader import load_cluster_config
    from cluster_deployer.nodes import uncordon_node

    with handle_errors("Node uncordon"):
        config = load_cluster_config(config_file)
        uncordon_node(make_context(), config, hostname)
        console.print(f"[green]✓[/green] Node '{hostname}' uncordoned")


if __name__ == "__main__":
    app()
