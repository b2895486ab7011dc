"""
Azure Load Balancer front-ends for a Patroni cluster.

The write load balancer probes Patroni's /primary endpoint, so only the
leader receives traffic. The read load balancer probes /replica. Everything
is done through the az CLI on the machine running pghaops; Azure owns the
resources, we only check and create them.
"""

from dataclasses import dataclass, field
from enum import Enum
import logging
import os
from typing import Callable

from pghaops.errors import PreconditionError
from pghaops.steps import FailurePolicy, Step, StepResult, StepRunner


logger = logging.getLogger(__name__)


class Mode(Enum):
    WRITE_ONLY = 'write-only'
    READ_ONLY = 'read-only'
    BOTH = 'both'


class LoadBalancerType(Enum):
    INTERNAL = 'internal'
    PUBLIC = 'public'


@dataclass
class HealthProbe:
    name: str
    path: str
    port: int = field(default=8008)
    interval: int = field(default=5)
    threshold: int = field(default=2)
    protocol: str = field(default='http')


@dataclass
class Rule:
    name: str
    frontend_port: int
    backend_port: int
    idle_timeout: int = field(default=30)
    distribution: str = field(default='Default')
    protocol: str = field(default='tcp')


@dataclass
class LoadBalancerSpec:
    """
    One Azure load balancer with a single frontend, backend pool, health
    probe and rule.

    Arguments:
        role: "write" or "read"; only used for messages.
        name: Load balancer name.
        frontend_ip: Name of the frontend IP configuration.
        backend_pool: Name of the backend address pool.
        private_ip: Frontend address for internal load balancers.
        probe: Health probe towards Patroni REST API.
        rule: Load balancing rule for PostgreSQL traffic.
    """

    role: str
    name: str
    frontend_ip: str
    backend_pool: str
    private_ip: str
    probe: HealthProbe
    rule: Rule

    @property
    def public_ip_name(self) -> str:
        return f'pip-{self.name}'


def write_load_balancer(name: str = 'nlb-postgresql-ha', private_ip: str = '10.1.0.10',
                        postgres_port: int = 55018, api_port: int = 8008) -> LoadBalancerSpec:
    return LoadBalancerSpec(
        role='write',
        name=name,
        frontend_ip='nlb-frontend-postgresql',
        backend_pool='nlb-backend-postgresql',
        private_ip=private_ip,
        probe=HealthProbe(name='health-pg-patroni', path='/primary', port=api_port),
        rule=Rule(name='nlb-rule-postgresql', frontend_port=postgres_port, backend_port=postgres_port),
    )


def read_load_balancer(name: str = 'nlb-postgresql-ha-read', private_ip: str = '10.1.0.11',
                       postgres_port: int = 55018, api_port: int = 8008) -> LoadBalancerSpec:
    return LoadBalancerSpec(
        role='read',
        name=name,
        frontend_ip='nlb-frontend-postgresql-read',
        backend_pool='nlb-backend-postgresql-read',
        private_ip=private_ip,
        probe=HealthProbe(name='health-pg-patroni-replica', path='/replica', port=api_port),
        rule=Rule(name='nlb-rule-postgresql-read', frontend_port=postgres_port, backend_port=postgres_port),
    )


@dataclass
class AzureConfig:
    """
    Azure environment of the cluster.

    Arguments:
        resource_group: Resource group holding the VMs and network.
        location: Azure region, used for public IP addresses.
        vnet: Virtual network of the VMs.
        subnet: Subnet for internal load balancer frontends.
        nsg: Network security group of the VMs. Skipped if it does not exist.
        lb_type: Internal (private frontend IP) or public load balancers.
        nodes: VM names of the PostgreSQL nodes.
        postgres_port: PostgreSQL port on the nodes and the frontends.
        patroni_api_port: Patroni REST API port, target of health probes.
        write: Load balancer routing to the primary.
        read: Load balancer routing to replicas.
        mode: Which of the load balancers to manage.
    """

    resource_group: str = field(default='RG_VM_LINUX')
    location: str = field(default='eastus')
    vnet: str = field(default='vnet-pgha-cluster')
    subnet: str = field(default='default')
    nsg: str = field(default='nsg-pgha-cluster')
    lb_type: LoadBalancerType = field(default=LoadBalancerType.INTERNAL)
    nodes: list[str] = field(default_factory=lambda: ['lx-pgnode-01', 'lx-pgnode-02', 'lx-pgnode-03'])
    postgres_port: int = field(default=55018)
    patroni_api_port: int = field(default=8008)
    write: LoadBalancerSpec = field(default=None)
    read: LoadBalancerSpec = field(default=None)
    mode: Mode = field(default=Mode.BOTH)

    def __post_init__(self):
        if self.write is None:
            self.write = write_load_balancer(postgres_port=self.postgres_port, api_port=self.patroni_api_port)
        if self.read is None:
            self.read = read_load_balancer(postgres_port=self.postgres_port, api_port=self.patroni_api_port)

    def load_balancers(self) -> list[LoadBalancerSpec]:
        selected = []
        if self.mode in (Mode.WRITE_ONLY, Mode.BOTH):
            selected.append(self.write)
        if self.mode in (Mode.READ_ONLY, Mode.BOTH):
            selected.append(self.read)
        return selected


class AzureCli:
    """
    Thin wrapper for running az commands as steps.
    """

    def __init__(self, runner: StepRunner = None):
        self.runner = runner or StepRunner()

    def run(self, description: str, *args: str, policy: FailurePolicy = FailurePolicy.FATAL) -> StepResult:
        return self.runner.run(Step(description, ['az', *args], policy=policy))

    def exists(self, description: str, *args: str) -> bool:
        return self.run(description, *args, policy=FailurePolicy.TOLERATE).ok

    def query(self, description: str, *args: str, query: str,
              policy: FailurePolicy = FailurePolicy.FATAL) -> str:
        return self.run(description, *args, '--query', query, '-o', 'tsv', policy=policy).output


Confirm = Callable[[str], bool]


def check_prerequisites(az: AzureCli):
    version = az.run('Check Azure CLI', 'version', '--query', '"azure-cli"', '-o', 'tsv',
                     policy=FailurePolicy.TOLERATE)
    if version.returncode == 127:
        raise PreconditionError('Azure CLI is not installed',
                                hint='Install from: https://docs.microsoft.com/cli/azure/install-azure-cli')
    logger.info('Azure CLI installed: %s', version.output)

    if not az.exists('Check Azure login', 'account', 'show'):
        raise PreconditionError('Not logged in to Azure', hint='Please run: az login')
    account = az.query('Read account', 'account', 'show', query='user.name')
    subscription = az.query('Read subscription', 'account', 'show', query='name')
    logger.info('Logged in as: %s', account)
    logger.info('Subscription: %s', subscription)


def verify_environment(az: AzureCli, config: AzureConfig):
    rg = config.resource_group
    if not az.exists('Show resource group', 'group', 'show', '--name', rg):
        raise PreconditionError(f"Resource group '{rg}' does not exist",
                                hint=f'Create it with: az group create -n {rg} -l {config.location}')
    logger.info('Resource group exists: %s', rg)

    if not az.exists('Show virtual network', 'network', 'vnet', 'show', '--resource-group', rg, '--name', config.vnet):
        raise PreconditionError(f"Virtual network '{config.vnet}' does not exist")
    logger.info('Virtual network exists: %s', config.vnet)

    if not az.exists('Show subnet', 'network', 'vnet', 'subnet', 'show', '--resource-group', rg,
                     '--vnet-name', config.vnet, '--name', config.subnet):
        raise PreconditionError(f"Subnet '{config.subnet}' does not exist in VNet '{config.vnet}'")
    logger.info('Subnet exists: %s', config.subnet)

    missing = []
    for vm in config.nodes:
        if az.exists(f'Show VM {vm}', 'vm', 'show', '--resource-group', rg, '--name', vm):
            logger.info('  VM found: %s', vm)
        else:
            logger.error('  VM not found: %s', vm)
            missing.append(vm)
    if missing:
        raise PreconditionError(f'Some VMs are missing: {", ".join(missing)}', hint='Please create them first')


def create_load_balancer(az: AzureCli, config: AzureConfig, lb: LoadBalancerSpec, confirm: Confirm) -> bool:
    """
    Creates the load balancer unless it exists. An existing one is either
    kept or deleted and recreated, as the operator chooses.

    Returns whether a new load balancer was created.
    """
    rg = config.resource_group
    if az.exists(f'Show load balancer {lb.name}', 'network', 'lb', 'show', '--resource-group', rg, '--name', lb.name):
        logger.warning("Load balancer '%s' already exists", lb.name)
        if not confirm('Delete and recreate?'):
            logger.info('Using existing load balancer %s', lb.name)
            return False
        logger.info('Deleting existing load balancer...')
        az.run(f'Delete load balancer {lb.name}', 'network', 'lb', 'delete', '--resource-group', rg, '--name', lb.name)
        logger.info('Deleted existing load balancer')

    if config.lb_type == LoadBalancerType.INTERNAL:
        logger.info('Creating internal %s load balancer...', lb.role)
        az.run(f'Create load balancer {lb.name}', 'network', 'lb', 'create',
               '--resource-group', rg,
               '--name', lb.name,
               '--sku', 'Standard',
               '--vnet-name', config.vnet,
               '--subnet', config.subnet,
               '--frontend-ip-name', lb.frontend_ip,
               '--backend-pool-name', lb.backend_pool,
               '--private-ip-address', lb.private_ip)
        logger.info('Internal load balancer created: %s (%s)', lb.name, lb.private_ip)
    else:
        logger.info('Creating public IP address...')
        az.run(f'Create public IP {lb.public_ip_name}', 'network', 'public-ip', 'create',
               '--resource-group', rg,
               '--name', lb.public_ip_name,
               '--sku', 'Standard',
               '--allocation-method', 'Static',
               '--location', config.location)
        logger.info('Creating public %s load balancer...', lb.role)
        az.run(f'Create load balancer {lb.name}', 'network', 'lb', 'create',
               '--resource-group', rg,
               '--name', lb.name,
               '--sku', 'Standard',
               '--public-ip-address', lb.public_ip_name,
               '--frontend-ip-name', lb.frontend_ip,
               '--backend-pool-name', lb.backend_pool)
        logger.info('Public load balancer created: %s (%s)', lb.name, frontend_address(az, config, lb))
    return True


def create_health_probe(az: AzureCli, config: AzureConfig, lb: LoadBalancerSpec):
    probe = lb.probe
    if az.exists(f'Show health probe {probe.name}', 'network', 'lb', 'probe', 'show', '--resource-group',
                 config.resource_group, '--lb-name', lb.name, '--name', probe.name):
        logger.warning("Health probe '%s' already exists", probe.name)
        return
    logger.info('Creating %s health probe on port %d, endpoint %s', probe.protocol.upper(), probe.port, probe.path)
    az.run(f'Create health probe {probe.name}', 'network', 'lb', 'probe', 'create',
           '--resource-group', config.resource_group,
           '--lb-name', lb.name,
           '--name', probe.name,
           '--protocol', probe.protocol,
           '--port', str(probe.port),
           '--path', probe.path,
           '--interval', str(probe.interval),
           '--threshold', str(probe.threshold))
    logger.info('Health probe created: %s (every %ds, %d failures)', probe.name, probe.interval, probe.threshold)


def create_rule(az: AzureCli, config: AzureConfig, lb: LoadBalancerSpec):
    rule = lb.rule
    if az.exists(f'Show load balancing rule {rule.name}', 'network', 'lb', 'rule', 'show', '--resource-group',
                 config.resource_group, '--lb-name', lb.name, '--name', rule.name):
        logger.warning("Load balancing rule '%s' already exists", rule.name)
        return
    logger.info('Creating rule for PostgreSQL port %d...', rule.frontend_port)
    az.run(f'Create load balancing rule {rule.name}', 'network', 'lb', 'rule', 'create',
           '--resource-group', config.resource_group,
           '--lb-name', lb.name,
           '--name', rule.name,
           '--protocol', rule.protocol,
           '--frontend-port', str(rule.frontend_port),
           '--backend-port', str(rule.backend_port),
           '--frontend-ip-name', lb.frontend_ip,
           '--backend-pool-name', lb.backend_pool,
           '--probe-name', lb.probe.name,
           '--disable-outbound-snat', 'true',
           '--idle-timeout', str(rule.idle_timeout),
           '--enable-tcp-reset', 'true',
           '--load-distribution', rule.distribution)
    logger.info('Load balancing rule created: %s (%d -> %d, %s distribution, idle timeout %ds)',
                rule.name, rule.frontend_port, rule.backend_port, rule.distribution, rule.idle_timeout)


NSG_RULES = (
    # name, priority, source, which port
    ('AllowHealthProbe', 100, 'AzureLoadBalancer', 'patroni_api_port'),
    ('AllowPostgreSQL', 110, 'VirtualNetwork', 'postgres_port'),
)


def configure_nsg(az: AzureCli, config: AzureConfig):
    rg = config.resource_group
    if not az.exists(f'Show NSG {config.nsg}', 'network', 'nsg', 'show', '--resource-group', rg, '--name', config.nsg):
        logger.warning("NSG '%s' not found", config.nsg)
        logger.warning('Skipping NSG configuration - configure manually if needed')
        return

    for name, priority, source, port_attr in NSG_RULES:
        port = getattr(config, port_attr)
        if az.exists(f'Show NSG rule {name}', 'network', 'nsg', 'rule', 'show', '--resource-group', rg,
                     '--nsg-name', config.nsg, '--name', name):
            logger.warning("NSG rule '%s' already exists", name)
            continue
        az.run(f'Create NSG rule {name}', 'network', 'nsg', 'rule', 'create',
               '--resource-group', rg,
               '--nsg-name', config.nsg,
               '--name', name,
               '--priority', str(priority),
               '--source-address-prefixes', source,
               '--destination-port-ranges', str(port),
               '--protocol', 'Tcp',
               '--access', 'Allow',
               '--direction', 'Inbound')
        logger.info('NSG rule created: %s (port %d)', name, port)


def add_backend_pool_members(az: AzureCli, config: AzureConfig, lb: LoadBalancerSpec):
    rg = config.resource_group
    for vm in config.nodes:
        logger.info('Processing node: %s', vm)
        nic_id = az.query(f'Read NIC of {vm}', 'vm', 'show', '--resource-group', rg, '--name', vm,
                          query='networkProfile.networkInterfaces[0].id', policy=FailurePolicy.WARN)
        if not nic_id:
            logger.warning('  Could not find the NIC of %s, not adding it to backend pool', vm)
            continue
        nic_name = os.path.basename(nic_id)
        logger.info('  NIC: %s', nic_name)

        added = az.run(f'Add {vm} to backend pool {lb.backend_pool}', 'network', 'nic', 'ip-config', 'address-pool', 'add',
                       '--resource-group', rg,
                       '--nic-name', nic_name,
                       '--ip-config-name', 'ipconfig1',
                       '--lb-name', lb.name,
                       '--address-pool', lb.backend_pool,
                       policy=FailurePolicy.TOLERATE)
        if added.ok:
            logger.info('  Added %s to backend pool', vm)
        else:
            logger.warning('  %s already in backend pool or failed to add', vm)


def frontend_address(az: AzureCli, config: AzureConfig, lb: LoadBalancerSpec) -> str:
    if config.lb_type == LoadBalancerType.INTERNAL:
        return az.query('Read frontend address', 'network', 'lb', 'frontend-ip', 'show',
                        '--resource-group', config.resource_group, '--lb-name', lb.name, '--name', lb.frontend_ip,
                        query='privateIpAddress', policy=FailurePolicy.WARN)
    return az.query('Read public address', 'network', 'public-ip', 'show',
                    '--resource-group', config.resource_group, '--name', lb.public_ip_name,
                    query='ipAddress', policy=FailurePolicy.WARN)


def verify_setup(az: AzureCli, config: AzureConfig, lb: LoadBalancerSpec) -> str:
    """
    Checks what was created. Problems are only warnings, the nodes may still
    be coming up. Returns the frontend address.
    """
    address = frontend_address(az, config, lb)
    logger.info('%s load balancer IP: %s', lb.role.capitalize(), address)

    count = az.query('Count backend pool members', 'network', 'lb', 'address-pool', 'show',
                     '--resource-group', config.resource_group, '--lb-name', lb.name, '--name', lb.backend_pool,
                     query='backendIpConfigurations | length(@)', policy=FailurePolicy.WARN)
    expected = len(config.nodes)
    if count == str(expected):
        logger.info('All %d nodes in backend pool', expected)
    else:
        logger.warning('Expected %d nodes in backend pool %s, found %s', expected, lb.backend_pool, count or 'none')

    probe = az.run('Show health probe', 'network', 'lb', 'probe', 'show',
                   '--resource-group', config.resource_group, '--lb-name', lb.name, '--name', lb.probe.name,
                   '--query', '{Port:port,Protocol:protocol,Path:requestPath}', '-o', 'table',
                   policy=FailurePolicy.WARN)
    if probe.ok:
        logger.info('Health probe:\n%s', probe.output)
    return address


def provision(az: AzureCli, config: AzureConfig, confirm: Confirm) -> dict[str, str]:
    """
    Creates the selected load balancers with their probes, rules and backend
    pools, and opens the NSG for them. Returns frontend address per load
    balancer name.
    """
    addresses = {}
    balancers = config.load_balancers()
    for lb in balancers:
        logger.info('Setting up %s load balancer %s', lb.role, lb.name)
        create_load_balancer(az, config, lb, confirm)
        # A kept load balancer may come from a run that failed halfway
        create_health_probe(az, config, lb)
        create_rule(az, config, lb)
    configure_nsg(az, config)
    for lb in balancers:
        add_backend_pool_members(az, config, lb)
        addresses[lb.name] = verify_setup(az, config, lb)
    return addresses
