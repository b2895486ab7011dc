from dataclasses import dataclass, field
from io import StringIO
import logging
import re
import yaml
from pyinfra import host
from pyinfra.api import FactBase, StringCommand, operation
from pyinfra.facts.server import LinuxDistribution
from pyinfra.operations import apt, files, systemd

from pghaops.errors import UnsupportedPlatformError
from pghaops.secret import generate_password
from pghaops.steps import FailurePolicy, Step, StepRunner


logger = logging.getLogger(__name__)

POSTGRES_USER = 'postgres'
POSTGRES_BASE_DIR = '/var/lib/postgresql'
CONFIG_DIR = '/etc/patroni'
CONFIG_PATH = f'{CONFIG_DIR}/patroni.yml'
LOG_DIR = '/var/log/patroni'
UNIT_PATH = '/etc/systemd/system/patroni.service'
SUDOERS_PATH = '/etc/sudoers.d/postgres'

SUPPORTED_OS = ('ubuntu', 'debian')
SUPPORTED_ARCH = ('amd64', 'arm64')
WATCHDOG_MODES = ('off', 'automatic', 'required')


def _default_parameters() -> dict:
    return {
        'max_connections': 250,
        'superuser_reserved_connections': 5,
        'password_encryption': 'scram-sha-256',
        'max_locks_per_transaction': 64,
        'max_prepared_transactions': 0,
        'shared_buffers': '1GB',
        'work_mem': '16MB',
        'maintenance_work_mem': '512MB',
        'effective_cache_size': '3GB',
        'checkpoint_timeout': '15min',
        'checkpoint_completion_target': 0.8,
        'min_wal_size': '2GB',
        'max_wal_size': '8GB',
        'wal_buffers': '32MB',
        'default_statistics_target': 1000,
        'seq_page_cost': 1,
        'random_page_cost': 4,
        'effective_io_concurrency': 2,
        'synchronous_commit': 'on',
        'autovacuum': 'on',
        'autovacuum_max_workers': 5,
        'autovacuum_vacuum_scale_factor': 0.01,
        'autovacuum_analyze_scale_factor': 0.01,
        'autovacuum_vacuum_cost_limit': 500,
        'autovacuum_vacuum_cost_delay': 2,
        'autovacuum_naptime': '1s',
        'max_files_per_process': 4096,
        'archive_mode': 'on',
        'archive_timeout': '1800s',
        'wal_level': 'replica',
        'wal_keep_size': '2GB',
        'max_wal_senders': 10,
        'max_replication_slots': 10,
        'hot_standby': 'on',
        'wal_log_hints': 'on',
        'shared_preload_libraries': 'pg_stat_statements',
        'pg_stat_statements.max': 10000,
        'pg_stat_statements.track': 'all',
        'pg_stat_statements.track_utility': 'false',
        'pg_stat_statements.save': 'true',
        'track_io_timing': 'on',
        'log_lock_waits': 'on',
        'log_temp_files': 0,
        'track_activities': 'on',
        'track_counts': 'on',
        'track_functions': 'all',
        'log_checkpoints': 'on',
        'logging_collector': 'on',
        'log_truncate_on_rotation': 'on',
        'log_rotation_age': '1d',
        'log_rotation_size': 0,
        'log_line_prefix': '%t [%p-%l] %r %q%u@%d ',
        'log_filename': 'postgresql-%Y-%m-%d_%H%M%S.log',
        'hot_standby_feedback': 'off',
        'max_standby_streaming_delay': '30s',
        'wal_receiver_status_interval': '10s',
        'idle_in_transaction_session_timeout': '10min',
        'jit': 'off',
        'max_worker_processes': 4,
        'max_parallel_workers': 4,
        'max_parallel_workers_per_gather': 2,
        'max_parallel_maintenance_workers': 2,
    }


@dataclass
class PostgresConfig:
    """
    PostgreSQL settings that Patroni writes into the DCS when the cluster is
    bootstrapped. Changing them later requires `patronictl edit-config`.

    Arguments:
        parameters: postgresql.conf parameters.
        data_checksums: Initialize the cluster with data checksums.
        locale: initdb locale.
    """

    parameters: dict = field(default_factory=_default_parameters)
    data_checksums: bool = field(default=True)
    locale: str = field(default='en_US.UTF-8')


@dataclass
class ClusterConfig:
    """
    Patroni cluster configuration.

    Arguments:
        etcd_hosts: etcd client endpoints as host:port. They must all belong
            to a single etcd cluster.
        name: Human-readable cluster name.
        scope: Patroni scope. Used as key in etcd, so DO NOT REUSE it
            between clusters.
        postgres_version: PostgreSQL major version to install.
        postgres_port: Port PostgreSQL listens on.
        api_port: Port of Patroni REST API. Load balancer health probes
            connect to this.
        postgres: Configuration for PostgreSQL itself.
        watchdog_mode: Patroni watchdog mode. "required" refuses to become
            leader without /dev/watchdog.
    """

    etcd_hosts: list[str]
    name: str = field(default='pgha-etcd-cluster')
    scope: str = field(default='pgha-etcd-cluster')
    postgres_version: str = field(default='17')
    postgres_port: int = field(default=5432)
    api_port: int = field(default=8008)
    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    watchdog_mode: str = field(default='required')

    def __post_init__(self):
        if not self.etcd_hosts:
            raise ValueError('at least one etcd host is required')
        if self.watchdog_mode not in WATCHDOG_MODES:
            raise ValueError(f'watchdog_mode must be one of {WATCHDOG_MODES}')

    @property
    def data_dir(self) -> str:
        return f'{POSTGRES_BASE_DIR}/{self.postgres_version}/main'

    @property
    def bin_dir(self) -> str:
        return f'/usr/lib/postgresql/{self.postgres_version}/bin'

    @property
    def pg_config_dir(self) -> str:
        return f'/etc/postgresql/{self.postgres_version}/main'


@dataclass(frozen=True)
class PatroniNode:
    name: str
    ip: str


@dataclass
class Credentials:
    """
    Passwords embedded in patroni.yml. They must be the same on every node
    of the cluster.
    """

    superuser: str
    replicator: str
    rewind: str
    restapi: str

    superuser_name: str = field(default='postgres')
    replicator_name: str = field(default='replicator')
    rewind_name: str = field(default='rewind_user')
    restapi_name: str = field(default='patroni')

    @classmethod
    def generate(cls, superuser: str = None, replicator: str = None,
                 rewind: str = None, restapi: str = None) -> 'Credentials':
        return cls(
            superuser=superuser or generate_password(),
            replicator=replicator or generate_password(),
            rewind=rewind or generate_password(),
            restapi=restapi or generate_password(),
        )


def parse_etcd_hosts(value: str) -> list[str]:
    hosts = [h.strip() for h in value.split(',') if h.strip()]
    if not hosts:
        raise ValueError('no etcd hosts given')
    for h in hosts:
        if not re.fullmatch(r'[A-Za-z0-9.\-]+:\d{1,5}', h):
            raise ValueError(f'invalid etcd host {h!r}, expected host:port')
    return hosts


def is_first_node(name: str) -> bool:
    return name.endswith('01') or name.endswith('-1')


class ActiveFirewall(FactBase):
    """
    Returns "ufw" or "firewalld" if either is installed and active, None
    otherwise.
    """

    def command(self):
        return ('if command -v ufw >/dev/null 2>&1 && ufw status | grep -q "Status: active"; then echo ufw; '
                'elif command -v firewall-cmd >/dev/null 2>&1 && firewall-cmd --state >/dev/null 2>&1; then echo firewalld; '
                'fi')

    def process(self, output):
        return output[0].strip() if output else None


@operation()
def instance(cluster: ClusterConfig, node: PatroniNode, credentials: Credentials):
    """
    Installs PostgreSQL and Patroni natively on the current host and writes
    the Patroni configuration. The Patroni service is enabled but NOT
    started; start the first node before the others so it bootstraps the
    cluster.

    Arguments:
        cluster: Cluster configuration. Must be same for all nodes.
        node: Name and address of this node.
        credentials: Cluster passwords. ALL of them must be the same across
            the entire cluster.
    """
    distro = host.get_fact(LinuxDistribution) or {}
    os_id = (distro.get('release_meta') or {}).get('ID', '').lower()
    if os_id not in SUPPORTED_OS:
        raise UnsupportedPlatformError(f'unsupported operating system: {os_id or "unknown"}')

    yield from apt.packages._inner(packages=[
        'apt-transport-https', 'ca-certificates', 'curl', 'gnupg', 'lsb-release',
        'python3', 'python3-pip', 'python3-dev', 'python3-venv', 'python3-setuptools',
        'python3-wheel', 'build-essential', 'libpq-dev', 'openssl', 'wget',
        f'postgresql-client-{cluster.postgres_version}',
    ], update=True)
    yield from apt.packages._inner(packages=[f'postgresql-{cluster.postgres_version}'])

    # The packaged cluster would fight Patroni for the data directory
    yield StringCommand('systemctl stop postgresql 2>/dev/null || true')
    yield StringCommand('systemctl disable postgresql 2>/dev/null || true')

    yield from files.directory._inner(path=CONFIG_DIR, user='root', group='root')
    yield from files.directory._inner(path=LOG_DIR, user=POSTGRES_USER, group=POSTGRES_USER)
    yield from files.directory._inner(path='/var/lib/patroni', user=POSTGRES_USER, group=POSTGRES_USER)
    yield from files.put._inner(src=StringIO(SUDOERS), dest=SUDOERS_PATH, mode='440')

    yield from apt.packages._inner(packages=['python3-psycopg2', 'psutils', 'patroni', 'check-patroni'])

    yield from files.directory._inner(path=f'{POSTGRES_BASE_DIR}/{cluster.postgres_version}',
                                      user=POSTGRES_USER, group=POSTGRES_USER)
    yield from files.directory._inner(path='/var/run/postgresql', user=POSTGRES_USER, group=POSTGRES_USER)
    yield from files.directory._inner(path=f'{cluster.data_dir}/log', user=POSTGRES_USER, group=POSTGRES_USER)

    # Contains plaintext passwords
    config = render_config(cluster, node, credentials)
    yield from files.put._inner(src=StringIO(config), dest=CONFIG_PATH,
                                user=POSTGRES_USER, group=POSTGRES_USER, mode='600')
    yield from files.put._inner(src=StringIO(_patroni_unit(cluster)), dest=UNIT_PATH, mode='644')
    yield from systemd.service._inner(service='patroni.service', running=False, enabled=True, daemon_reload=True)


@operation()
def firewall(ports: list[int]):
    """
    Opens the given TCP ports with whatever firewall is active on the host.
    Hosts without an active firewall are left alone.
    """
    active = host.get_fact(ActiveFirewall)
    if active == 'ufw':
        for port in ports:
            yield StringCommand(f'ufw allow {port}/tcp')
    elif active == 'firewalld':
        for port in ports:
            yield StringCommand(f'firewall-cmd --permanent --add-port={port}/tcp')
        yield StringCommand('firewall-cmd --reload')
    else:
        logger.warning('No active firewall detected - skipping firewall configuration')


HELPER_SCRIPTS = {
    'patroni-status': 'list',
    'patroni-switchover': 'switchover',
    'patroni-failover': 'failover',
    'patroni-reinit': 'reinit',
}


@operation()
def helper_scripts(config_path: str = CONFIG_PATH):
    """
    Creates patroni-status, patroni-switchover, patroni-failover and
    patroni-reinit in /usr/local/bin. Extra arguments are passed on to
    patronictl.
    """
    for name, command in HELPER_SCRIPTS.items():
        script = f"""#!/bin/sh
set -eu

exec patronictl -c {config_path} {command} "$@"
"""
        yield from files.put._inner(src=StringIO(script), dest=f'/usr/local/bin/{name}', mode='755')


SUDOERS = """postgres ALL=(ALL) NOPASSWD: /bin/systemctl start postgresql*, /bin/systemctl stop postgresql*, \
/bin/systemctl restart postgresql*, /bin/systemctl reload postgresql*, /bin/systemctl status postgresql*
"""


def verify(node: PatroniNode, superuser_password: str, postgres_port: int = 5432,
           runner: StepRunner = None) -> bool:
    """
    Checks a started node: shows the cluster members and tries to connect
    to PostgreSQL. Nothing here is fatal; a fresh cluster may still be
    electing its leader.
    """
    runner = runner or StepRunner()
    listing = runner.run(Step('List Patroni cluster members',
                              ['patronictl', '-c', CONFIG_PATH, 'list'], policy=FailurePolicy.TOLERATE))
    if listing.ok:
        logger.info('Cluster members:\n%s', listing.output)

    # psql reads the password from the environment, never from argv
    connection = runner.run(Step('PostgreSQL connection test', [
        'psql', '-h', node.ip, '-p', str(postgres_port), '-U', 'postgres',
        '-d', 'postgres', '-c', 'SELECT version();',
    ], policy=FailurePolicy.WARN, env={'PGPASSWORD': superuser_password}))

    if connection.ok:
        logger.info('PostgreSQL connection test successful')
    else:
        logger.warning('This may be normal during initial cluster setup. Wait a few moments and try: '
                       'psql -h %s -p %d -U postgres', node.ip, postgres_port)
    return connection.ok


def render_config(cluster: ClusterConfig, node: PatroniNode, credentials: Credentials) -> str:
    return yaml.safe_dump(_patroni_config(cluster, node, credentials), sort_keys=False, default_flow_style=False)


def _patroni_config(cluster: ClusterConfig, node: PatroniNode, credentials: Credentials) -> dict:
    parameters = dict(cluster.postgres.parameters)
    parameters.setdefault('log_directory', f'{cluster.data_dir}/log')

    initdb = [{'encoding': 'UTF8'}, {'locale': cluster.postgres.locale}]
    if cluster.postgres.data_checksums:
        initdb.append('data-checksums')

    return {
        'scope': cluster.scope,
        'namespace': '/pgservice/',
        'name': node.name,
        'log': {
            'level': 'WARNING',
            'traceback_level': 'ERROR',
            'format': '%(asctime)s %(levelname)s: %(message)s',
            'dateformat': '',
            'max_queue_size': 1000,
            'dir': LOG_DIR,
            'file_num': 4,
            'file_size': 25000000,
            'loggers': {
                'patroni.postmaster': 'WARNING',
                'urllib3': 'WARNING',
            },
        },
        'restapi': {
            'listen': f'{node.ip}:{cluster.api_port}',
            'connect_address': f'{node.ip}:{cluster.api_port}',
            'authentication': {
                'username': credentials.restapi_name,
                'password': credentials.restapi,
            },
            'request_queue_size': 5,
        },
        'etcd3': {
            'hosts': list(cluster.etcd_hosts),
        },
        'bootstrap': {
            'dcs': {
                'ttl': 30,
                'loop_wait': 10,
                'retry_timeout': 10,
                'maximum_lag_on_failover': 1048576,
                'primary_start_timeout': 300,
                'synchronous_mode': False,
                'synchronous_mode_strict': False,
                'postgresql': {
                    'use_pg_rewind': True,
                    'use_slots': True,
                    'parameters': parameters,
                    'pg_hba': [
                        f'host replication {credentials.replicator_name} 127.0.0.1/32 scram-sha-256',
                        f'host replication {credentials.replicator_name} 0.0.0.0/0 scram-sha-256',
                        'host all all 0.0.0.0/0 scram-sha-256',
                    ],
                },
            },
            'initdb': initdb,
        },
        'postgresql': {
            'listen': f'{node.ip}:{cluster.postgres_port}',
            'connect_address': f'{node.ip}:{cluster.postgres_port}',
            'use_unix_socket': True,
            'data_dir': cluster.data_dir,
            'config_dir': cluster.pg_config_dir,
            'bin_dir': cluster.bin_dir,
            'pgpass': f'{POSTGRES_BASE_DIR}/.pgpass',
            'authentication': {
                'replication': {
                    'username': credentials.replicator_name,
                    'password': credentials.replicator,
                },
                'superuser': {
                    'username': credentials.superuser_name,
                    'password': credentials.superuser,
                },
                'rewind': {
                    'username': credentials.rewind_name,
                    'password': credentials.rewind,
                },
            },
            'parameters': {
                'unix_socket_directories': '/var/run/postgresql',
            },
            'remove_data_directory_on_rewind_failure': False,
            'remove_data_directory_on_diverged_timelines': False,
            'create_replica_methods': ['basebackup'],
            'basebackup': {
                'max-rate': '250M',
                'checkpoint': 'fast',
            },
        },
        'watchdog': {
            'mode': cluster.watchdog_mode,
            'device': '/dev/watchdog',
            'safety_margin': 5,
        },
        'tags': {
            'nofailover': False,
            'noloadbalance': False,
            'clonefrom': False,
            'nosync': False,
        },
    }


def _patroni_unit(cluster: ClusterConfig) -> str:
    return f"""[Unit]
Description=Patroni - PostgreSQL {cluster.postgres_version} high availability ({cluster.scope})
After=syslog.target network-online.target
Wants=network-online.target

[Service]
Type=simple
User={POSTGRES_USER}
Group={POSTGRES_USER}
ExecStart=/usr/bin/patroni {CONFIG_PATH}
ExecReload=/bin/kill -s HUP $MAINPID
KillMode=process
TimeoutSec=30
Restart=on-failure

[Install]
WantedBy=multi-user.target
"""
