import logging

import pytest

from pghaops import azure
from pghaops.errors import PreconditionError
from pghaops.steps import StepRunner


QUERIES = {
    'networkProfile.networkInterfaces[0].id': '/subscriptions/s/resourceGroups/rg/providers/Microsoft.Network/networkInterfaces/{vm}-nic',
    'privateIpAddress': '10.1.0.10',
    'ipAddress': '20.30.40.50',
    'backendIpConfigurations | length(@)': '3',
    'user.name': 'operator@example.com',
    'name': 'Test Subscription',
}


class FakeAzure:
    """
    Pretends to be the az CLI. Load balancers with their probes and rules,
    and NSG rules, exist only when listed in `existing`. Everything else
    exists unless listed in `missing`.
    """

    def __init__(self, existing=(), missing=(), installed=True, logged_in=True, without_nic=()):
        self.existing = set(existing)
        self.without_nic = set(without_nic)
        self.missing = set(missing)
        self.installed = installed
        self.logged_in = logged_in
        self.calls = []

    def __call__(self, args, env=None):
        self.calls.append(args)
        if not self.installed:
            return 127, '', 'az: command not found'
        command = args[1:]
        if command[:2] == ['account', 'show'] and not self.logged_in:
            return 1, '', 'Please run az login'
        if '--query' in command:
            query = command[command.index('--query') + 1]
            vm = command[command.index('--name') + 1] if '--name' in command else ''
            if query.startswith('networkProfile') and vm in self.without_nic:
                return 3, '', 'ResourceNotFound'
            if query in QUERIES:
                return 0, QUERIES[query].format(vm=vm) + '\n', ''
            return 0, 'table\n', ''
        if 'show' in command and '--name' in command:
            name = command[command.index('--name') + 1]
            optional = command[:3] in (['network', 'lb', 'show'], ['network', 'lb', 'probe'],
                                       ['network', 'lb', 'rule'], ['network', 'nsg', 'rule'])
            found = name in self.existing if optional else name not in self.missing
            return (0, '{}', '') if found else (3, '', 'ResourceNotFound')
        return 0, '', ''

    def ran(self, *words):
        return [args for args in self.calls if all(word in args for word in words)]


def cli(fake):
    return azure.AzureCli(StepRunner(fake))


def never(question):
    raise AssertionError(f'unexpected question: {question}')


def test_default_load_balancers():
    config = azure.AzureConfig()
    write, read = config.load_balancers()
    assert write.name == 'nlb-postgresql-ha'
    assert write.probe.path == '/primary'
    assert write.rule.frontend_port == 55018
    assert read.name == 'nlb-postgresql-ha-read'
    assert read.probe.path == '/replica'
    assert read.private_ip == '10.1.0.11'


def test_mode_selects_load_balancers():
    assert [lb.role for lb in azure.AzureConfig(mode=azure.Mode.WRITE_ONLY).load_balancers()] == ['write']
    assert [lb.role for lb in azure.AzureConfig(mode=azure.Mode.READ_ONLY).load_balancers()] == ['read']


def lb_creates(fake):
    return [args for args in fake.calls if args[:4] == ['az', 'network', 'lb', 'create']]


def test_provision_from_scratch():
    fake = FakeAzure()
    addresses = azure.provision(cli(fake), azure.AzureConfig(), confirm=never)

    assert addresses == {'nlb-postgresql-ha': '10.1.0.10', 'nlb-postgresql-ha-read': '10.1.0.10'}
    assert len(lb_creates(fake)) == 2
    assert len(fake.ran('probe', 'create')) == 2
    assert len(fake.ran('rule', 'create', '--lb-name')) == 2
    assert len(fake.ran('nsg', 'rule', 'create')) == 2
    assert len(fake.ran('address-pool', 'add')) == 6
    assert fake.ran('address-pool', 'add', 'lx-pgnode-01-nic', 'nlb-backend-postgresql-read')
    probe = fake.ran('probe', 'create', 'health-pg-patroni')[0]
    assert probe[probe.index('--path') + 1] == '/primary'
    assert probe[probe.index('--port') + 1] == '8008'


def test_existing_load_balancer_is_kept(caplog):
    fake = FakeAzure(existing=['nlb-postgresql-ha', 'health-pg-patroni', 'nlb-rule-postgresql'])
    questions = []

    def decline(question):
        questions.append(question)
        return False

    with caplog.at_level(logging.INFO, logger='pghaops'):
        azure.provision(cli(fake), azure.AzureConfig(mode=azure.Mode.WRITE_ONLY), confirm=decline)
    assert questions == ['Delete and recreate?']
    assert 'Using existing load balancer nlb-postgresql-ha' in caplog.messages
    assert not fake.ran('lb', 'delete')
    assert not lb_creates(fake)
    assert not fake.ran('probe', 'create')
    assert not fake.ran('rule', 'create', '--lb-name')
    # Backend pool is still brought up to date
    assert len(fake.ran('address-pool', 'add')) == 3


def test_kept_load_balancer_gets_missing_probe_and_rule():
    # Left behind by a run that failed right after creating the load balancer
    fake = FakeAzure(existing=['nlb-postgresql-ha'])
    azure.provision(cli(fake), azure.AzureConfig(mode=azure.Mode.WRITE_ONLY), confirm=lambda question: False)

    assert not lb_creates(fake)
    assert fake.ran('probe', 'create', 'health-pg-patroni')
    assert fake.ran('rule', 'create', 'nlb-rule-postgresql')


def test_existing_load_balancer_is_recreated():
    fake = FakeAzure(existing=['nlb-postgresql-ha'])
    azure.provision(cli(fake), azure.AzureConfig(mode=azure.Mode.WRITE_ONLY), confirm=lambda question: True)

    delete = fake.calls.index(fake.ran('lb', 'delete')[0])
    create = fake.calls.index(lb_creates(fake)[0])
    assert delete < create
    assert fake.ran('probe', 'create')


def test_write_only_never_touches_read_balancer():
    fake = FakeAzure()
    azure.provision(cli(fake), azure.AzureConfig(mode=azure.Mode.WRITE_ONLY), confirm=never)
    assert not [args for args in fake.calls if any('read' in arg for arg in args)]


def test_read_only_never_touches_write_balancer():
    fake = FakeAzure()
    config = azure.AzureConfig(mode=azure.Mode.READ_ONLY)
    azure.provision(cli(fake), config, confirm=never)

    write = config.write
    names = {write.name, write.frontend_ip, write.backend_pool, write.probe.name, write.rule.name}
    assert not [args for args in fake.calls if names & set(args)]
    assert len(lb_creates(fake)) == 1


def test_missing_nic_is_skipped():
    fake = FakeAzure(without_nic=['lx-pgnode-02'])
    azure.add_backend_pool_members(cli(fake), azure.AzureConfig(), azure.AzureConfig().write)

    added = fake.ran('address-pool', 'add')
    assert len(added) == 2
    assert not fake.ran('address-pool', 'add', 'lx-pgnode-02-nic')


def test_public_load_balancer():
    fake = FakeAzure()
    config = azure.AzureConfig(lb_type=azure.LoadBalancerType.PUBLIC, mode=azure.Mode.READ_ONLY)
    addresses = azure.provision(cli(fake), config, confirm=never)

    assert fake.ran('public-ip', 'create', 'pip-nlb-postgresql-ha-read')
    assert fake.ran('lb', 'create', '--public-ip-address')
    assert not fake.ran('--private-ip-address')
    assert addresses == {'nlb-postgresql-ha-read': '20.30.40.50'}


def test_existing_nsg_rules_are_skipped():
    fake = FakeAzure(existing=['AllowHealthProbe'])
    azure.configure_nsg(cli(fake), azure.AzureConfig())
    created = fake.ran('nsg', 'rule', 'create')
    assert len(created) == 1
    assert 'AllowPostgreSQL' in created[0]
    assert '55018' in created[0]


def test_missing_nsg_is_skipped():
    fake = FakeAzure(missing=['nsg-pgha-cluster'])
    azure.configure_nsg(cli(fake), azure.AzureConfig())
    assert not fake.ran('nsg', 'rule')


def test_cli_not_installed():
    with pytest.raises(PreconditionError) as e:
        azure.check_prerequisites(cli(FakeAzure(installed=False)))
    assert 'install' in e.value.hint.lower()


def test_not_logged_in():
    with pytest.raises(PreconditionError) as e:
        azure.check_prerequisites(cli(FakeAzure(logged_in=False)))
    assert e.value.hint == 'Please run: az login'


def test_prerequisites_ok():
    azure.check_prerequisites(cli(FakeAzure()))


def test_missing_vm():
    with pytest.raises(PreconditionError) as e:
        azure.verify_environment(cli(FakeAzure(missing=['lx-pgnode-03'])), azure.AzureConfig())
    assert 'lx-pgnode-03' in e.value.message


def test_missing_resource_group():
    fake = FakeAzure(missing=['RG_VM_LINUX'])
    with pytest.raises(PreconditionError):
        azure.verify_environment(cli(fake), azure.AzureConfig())
    # Nothing else is looked at
    assert len(fake.calls) == 1
