import functools
import logging
import sys
import click

from pghaops import advisor, azure, console, deploy, etcd, localhost, patroni
from pghaops.config import ConfigError, load_config
from pghaops.errors import PreconditionError, UnsupportedPlatformError
from pghaops.secret import LocalSecretStore, SecretNotFoundError, get_or_generate
from pghaops.steps import StepFailedError
from pghaops.topology import DEFAULT_NODES, ClusterTopology, CurrentNode, cluster_string, etcd_arch, resolve_node
from pghaops.workflow import DEFAULT_STATE_FILE, InvalidTransitionError, JoinState, JoinWorkflow


logger = logging.getLogger(__name__)

CONTEXT_SETTINGS = {
    'help_option_names': ['-h', '--help'],
    'auto_envvar_prefix': 'PGHAOPS',
}


def handle_errors(func):
    """
    Reports expected failures as log lines and exits with status 1.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PreconditionError as e:
            logger.error(e.message)
            if e.hint:
                logger.error(e.hint)
        except (StepFailedError, deploy.DeployError, InvalidTransitionError, SecretNotFoundError, ValueError,
                OSError) as e:
            logger.error(str(e))
        sys.exit(1)

    return wrapper


def _require_root():
    if not localhost.is_root():
        raise PreconditionError('This command must be run as root', hint='Re-run it with sudo')


def _cancel(ctx: click.Context, message: str):
    logger.warning(message)
    ctx.exit(0)


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option('--verbose', is_flag=True, help='Also log every external command.')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='YAML file with defaults for command options.')
@click.pass_context
def cli(ctx, verbose, config_path):
    """
    Provisions a PostgreSQL high-availability stack: an etcd cluster,
    Patroni-managed PostgreSQL and Azure load balancers.
    """
    console.setup_logging(verbose)
    if config_path:
        try:
            ctx.default_map = load_config(config_path)
        except ConfigError as e:
            logger.error(str(e))
            ctx.exit(1)


@cli.group('etcd')
def etcd_group():
    """etcd members for Patroni's configuration store."""


def topology_options(func):
    func = click.option('--token', default='pgha-etcd-cluster', show_default=True,
                        help='Initial cluster token.')(func)
    func = click.option('--state-file', default=DEFAULT_STATE_FILE, show_default=True,
                        help='Where NODE 1 records join progress.')(func)
    func = click.option('--node', 'nodes', multiple=True, metavar='NAME=IP',
                        default=[f'{node.name}={node.ip}' for node in DEFAULT_NODES], show_default=True,
                        help='Cluster member, given three times in bootstrap order.')(func)
    return func


@etcd_group.command('install')
@topology_options
@click.option('--local-ip', help='Address of this host. Defaults to the first one of `hostname -I`.')
@click.option('--version', 'etcd_version', default='3.6.5', show_default=True, help='etcd release.')
@click.option('--initial-state', type=click.Choice(etcd.INITIAL_STATES), default='new', show_default=True,
              help='"existing" when joining a running cluster.')
@click.pass_context
@handle_errors
def etcd_install(ctx, nodes, token, state_file, local_ip, etcd_version, initial_state):
    """Installs and configures the etcd member for this host."""
    console.banner('STARTING ETCD CLUSTER INSTALLATION')
    _require_root()

    arch = etcd_arch(localhost.machine())
    logger.info('Architecture detected: %s', arch)

    cluster = etcd.ClusterConfig(topology=ClusterTopology.parse(nodes), token=token, version=etcd_version)
    current = resolve_node(cluster.topology, local_ip or localhost.primary_ip())
    logger.info('Node detected: %s (%s)', current.name, current.ip)
    workflow = JoinWorkflow.load(state_file, cluster.token)

    console.banner('CLUSTER CONFIGURATION')
    console.summary([
        ('etcd Version', cluster.version),
        ('Architecture', arch),
        ('Cluster Token', cluster.token),
        None,
        *[(f'Node {ordinal:02d}', f'{node.name} - {node.ip}')
          for ordinal, node in enumerate(cluster.topology.nodes, start=1)],
        None,
        ('Current Node', f'{current.name} ({current.ip})'),
        ('Cluster String', cluster_string(cluster.topology, current)),
        ('Initial State', initial_state),
    ])
    if not console.confirm('Continue with installation?'):
        _cancel(ctx, 'Installation cancelled')

    deploy.run_local((etcd.node, {'cluster': cluster, 'current': current, 'arch': arch,
                                  'initial_state': initial_state}))
    logger.info('etcd service enabled but NOT started')
    logger.warning('You must start the service MANUALLY after all nodes are ready')

    console.banner('INSTALLATION COMPLETED')
    console.lines(advisor.etcd_next_steps(cluster.topology, current, workflow.state))


@etcd_group.command('next-steps')
@topology_options
@click.option('--local-ip', help='Address of this host. Defaults to the first one of `hostname -I`.')
@handle_errors
def etcd_next_steps(nodes, token, state_file, local_ip):
    """Shows what to do next on this host."""
    topology = ClusterTopology.parse(nodes)
    current = resolve_node(topology, local_ip or localhost.primary_ip())
    workflow = JoinWorkflow.load(state_file, token)
    console.lines(advisor.etcd_next_steps(topology, current, workflow.state))


@etcd_group.command('mark')
@topology_options
@click.argument('event', type=click.Choice([s.value for s in JoinState if s != JoinState.NEW]))
@handle_errors
def etcd_mark(nodes, token, state_file, event):
    """
    Records a completed bootstrap step on NODE 1. Steps must be recorded
    in order: node1-started, node2-joined, node3-joined, complete.
    """
    topology = ClusterTopology.parse(nodes)
    workflow = JoinWorkflow.load(state_file, token)
    workflow.advance(JoinState(event))
    workflow.save(state_file)
    logger.info('Recorded %s', event)

    first = topology.nodes[0]
    console.lines(advisor.etcd_next_steps(topology, CurrentNode(first.name, first.ip, 1), workflow.state))


@cli.group('patroni')
def patroni_group():
    """Patroni-managed PostgreSQL nodes."""


def _credentials(superuser: str, replicator: str, secrets_dir: str) -> patroni.Credentials:
    given = {'superuser': superuser, 'replicator': replicator}
    if secrets_dir is None:
        for name, value in given.items():
            if not value:
                logger.info('Generated %s password', name)
        return patroni.Credentials.generate(superuser=superuser, replicator=replicator)

    store = LocalSecretStore(secrets_dir)
    values = {}
    for name in ('superuser', 'replicator', 'rewind', 'restapi'):
        if given.get(name):
            # Later runs and other nodes must see the same password
            store.put_secret(name, given[name].encode('utf-8'))
            values[name] = given[name]
            logger.info('Stored given %s password (%s/%s)', name, secrets_dir, name)
            continue
        values[name], generated = get_or_generate(store, name)
        logger.info('%s %s password (%s/%s)', 'Generated' if generated else 'Reusing', name, secrets_dir, name)
    return patroni.Credentials(**values)


@patroni_group.command('install')
@click.option('-n', '--node-name', help='Node name, e.g. lx-pgnode-01.  [required]')
@click.option('-i', '--node-ip', help='IP address of this PostgreSQL node.  [required]')
@click.option('-e', '--etcd-hosts', help='Comma-separated etcd endpoints, host1:2379,host2:2379,host3:2379.  [required]')
@click.option('-c', '--cluster-name', default='pgha-etcd-cluster', show_default=True, help='Cluster name.')
@click.option('-s', '--scope', default='pgha-etcd-cluster', show_default=True, help='Patroni scope.')
@click.option('-p', '--postgres-ver', default='17', show_default=True, help='PostgreSQL major version.')
@click.option('-u', '--superuser', help='PostgreSQL superuser password. Generated if not given.')
@click.option('-r', '--replicator', help='Replication user password. Generated if not given.')
@click.option('--secrets-dir', type=click.Path(file_okay=False),
              help='Keep generated passwords here and reuse them on later runs.')
@click.option('--postgres-port', default=5432, show_default=True, type=int)
@click.option('--api-port', default=8008, show_default=True, type=int, help='Patroni REST API port.')
@click.option('--watchdog-mode', type=click.Choice(patroni.WATCHDOG_MODES), default='required', show_default=True)
@click.pass_context
@handle_errors
def patroni_install(ctx, node_name, node_ip, etcd_hosts, cluster_name, scope, postgres_ver, superuser, replicator,
                    secrets_dir, postgres_port, api_port, watchdog_mode):
    """
    Installs PostgreSQL and Patroni on this host.

    Example: pghaops patroni install -n lx-pgnode-01 -i 10.0.0.4 -e 10.0.0.4:2379,10.0.0.5:2379,10.0.0.6:2379
    """
    if not node_name or not node_ip or not etcd_hosts:
        logger.error('Missing required parameters: --node-name, --node-ip and --etcd-hosts')
        click.echo(ctx.get_help())
        ctx.exit(1)

    cluster = patroni.ClusterConfig(
        etcd_hosts=patroni.parse_etcd_hosts(etcd_hosts),
        name=cluster_name,
        scope=scope,
        postgres_version=postgres_ver,
        postgres_port=postgres_port,
        api_port=api_port,
        watchdog_mode=watchdog_mode,
    )
    node = patroni.PatroniNode(name=node_name, ip=node_ip)

    console.banner('STARTING PATRONI POSTGRESQL HA CLUSTER SETUP')
    _require_root()
    os_id, os_version = localhost.os_release()
    if os_id not in patroni.SUPPORTED_OS:
        raise UnsupportedPlatformError(f'Unsupported operating system: {os_id}',
                                       hint=f'supported: {", ".join(patroni.SUPPORTED_OS)}')
    logger.info('Operating System: %s %s', os_id, os_version)
    arch = etcd_arch(localhost.machine(), supported=patroni.SUPPORTED_ARCH)
    logger.info('Architecture: %s', arch)

    console.banner('CONFIGURATION SUMMARY')
    console.summary([
        ('Cluster Name', cluster.name),
        ('Scope', cluster.scope),
        ('PostgreSQL Version', cluster.postgres_version),
        ('System Architecture', arch),
        None,
        ('Node Name', node.name),
        ('Node IP', node.ip),
        ('etcd Hosts', ', '.join(cluster.etcd_hosts)),
        None,
        ('PostgreSQL Port', cluster.postgres_port),
        ('Patroni API Port', cluster.api_port),
        ('Watchdog', cluster.watchdog_mode),
    ])
    if not console.confirm('Continue with installation?'):
        _cancel(ctx, 'Installation cancelled by user')

    credentials = _credentials(superuser, replicator, secrets_dir)
    deploy.run_local(
        (patroni.instance, {'cluster': cluster, 'node': node, 'credentials': credentials}),
        (patroni.firewall, {'ports': [cluster.postgres_port, cluster.api_port]}),
        (patroni.helper_scripts, {}),
    )

    console.banner('INSTALLATION COMPLETED SUCCESSFULLY')
    console.lines(advisor.patroni_next_steps(cluster, node, credentials))


@patroni_group.command('verify')
@click.option('-n', '--node-name', required=True)
@click.option('-i', '--node-ip', required=True)
@click.option('-u', '--superuser', help='PostgreSQL superuser password.')
@click.option('--secrets-dir', type=click.Path(file_okay=False), help='Read the superuser password from here.')
@click.option('--postgres-port', default=5432, show_default=True, type=int)
@handle_errors
def patroni_verify(node_name, node_ip, superuser, secrets_dir, postgres_port):
    """Checks cluster membership and PostgreSQL connectivity of a started node."""
    console.banner('Verifying Patroni Cluster')
    if not superuser and secrets_dir:
        superuser = LocalSecretStore(secrets_dir).get_secret('superuser').decode('utf-8')
    patroni.verify(patroni.PatroniNode(node_name, node_ip), superuser or '', postgres_port=postgres_port)


@cli.group('azure-lb')
def azure_group():
    """Azure Load Balancers in front of the Patroni cluster."""


@azure_group.command('setup')
@click.option('-g', '--resource-group', default='RG_VM_LINUX', show_default=True)
@click.option('-l', '--location', default='eastus', show_default=True)
@click.option('-n', '--lb-name', default='nlb-postgresql-ha', show_default=True, help='Write load balancer name.')
@click.option('-v', '--vnet-name', default='vnet-pgha-cluster', show_default=True)
@click.option('-s', '--subnet-name', default='default', show_default=True)
@click.option('-i', '--lb-ip', default='10.1.0.10', show_default=True, help='Write load balancer private IP.')
@click.option('--read-lb-name', default='nlb-postgresql-ha-read', show_default=True)
@click.option('--read-lb-ip', default='10.1.0.11', show_default=True)
@click.option('-t', '--lb-type', type=click.Choice([t.value for t in azure.LoadBalancerType]),
              default='internal', show_default=True)
@click.option('--nsg-name', default='nsg-pgha-cluster', show_default=True)
@click.option('-1', '--node1-name', default='lx-pgnode-01', show_default=True, help='Node 1 VM name.')
@click.option('-2', '--node2-name', default='lx-pgnode-02', show_default=True, help='Node 2 VM name.')
@click.option('-3', '--node3-name', default='lx-pgnode-03', show_default=True, help='Node 3 VM name.')
@click.option('--mode', type=click.Choice([m.value for m in azure.Mode]), default='both', show_default=True,
              help='Which load balancers to manage.')
@click.option('--postgres-port', default=55018, show_default=True, type=int)
@click.option('--api-port', default=8008, show_default=True, type=int, help='Patroni REST API port.')
@click.pass_context
@handle_errors
def azure_setup(ctx, resource_group, location, lb_name, vnet_name, subnet_name, lb_ip, read_lb_name, read_lb_ip,
                lb_type, nsg_name, node1_name, node2_name, node3_name, mode, postgres_port, api_port):
    """
    Creates the write (primary) and read (replica) load balancers.

    Example: pghaops azure-lb setup -g rg-postgresql-ha -l eastus -t internal
    """
    config = azure.AzureConfig(
        resource_group=resource_group,
        location=location,
        vnet=vnet_name,
        subnet=subnet_name,
        nsg=nsg_name,
        lb_type=azure.LoadBalancerType(lb_type),
        nodes=[node1_name, node2_name, node3_name],
        postgres_port=postgres_port,
        patroni_api_port=api_port,
        write=azure.write_load_balancer(name=lb_name, private_ip=lb_ip, postgres_port=postgres_port,
                                        api_port=api_port),
        read=azure.read_load_balancer(name=read_lb_name, private_ip=read_lb_ip, postgres_port=postgres_port,
                                      api_port=api_port),
        mode=azure.Mode(mode),
    )
    az = azure.AzureCli()

    console.banner('AZURE LOAD BALANCER SETUP FOR PATRONI HA')
    azure.check_prerequisites(az)
    azure.verify_environment(az, config)

    console.banner('CONFIGURATION SUMMARY')
    rows = [
        ('Resource Group', config.resource_group),
        ('Location', config.location),
        ('Load Balancer Type', config.lb_type.value),
        ('Mode', config.mode.value),
        ('Virtual Network', config.vnet),
        ('Subnet', config.subnet),
        ('PostgreSQL Nodes', ', '.join(config.nodes)),
    ]
    for lb in config.load_balancers():
        rows += [
            None,
            (f'{lb.role.capitalize()} Load Balancer', lb.name),
            ('  Frontend IP Name', lb.frontend_ip),
            ('  Backend Pool', lb.backend_pool),
            ('  Private IP', lb.private_ip if config.lb_type == azure.LoadBalancerType.INTERNAL else 'public'),
            ('  Health Probe', f'port {lb.probe.port}, {lb.probe.path}'),
        ]
    rows += [None, ('PostgreSQL Port', config.postgres_port)]
    console.summary(rows)
    if not console.confirm('Continue with setup?'):
        _cancel(ctx, 'Setup cancelled by user')

    addresses = azure.provision(az, config, confirm=console.confirm)

    console.banner('SETUP COMPLETED SUCCESSFULLY')
    for lb in config.load_balancers():
        console.lines(advisor.azure_next_steps(config, lb, addresses.get(lb.name)))
    console.lines(advisor.AZURE_FINAL_STEPS)


def main():
    # Every usage error exits with 1, like any other validation failure
    try:
        rv = cli.main(prog_name='pghaops', standalone_mode=False)
    except click.ClickException as e:
        e.show()
        sys.exit(1)
    except click.Abort:
        click.echo('Aborted!', err=True)
        sys.exit(1)
    sys.exit(rv if isinstance(rv, int) else 0)
