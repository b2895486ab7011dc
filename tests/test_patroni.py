import os

import pytest
import yaml

from pghaops import patroni
from pghaops.steps import StepRunner


CREDENTIALS = patroni.Credentials(superuser='su-pw', replicator='repl-pw', rewind='rw-pw', restapi='api-pw')
NODE = patroni.PatroniNode('lx-pgnode-02', '10.0.0.5')


def cluster(**kwargs):
    return patroni.ClusterConfig(etcd_hosts=['10.0.0.4:2379', '10.0.0.5:2379', '10.0.0.6:2379'], **kwargs)


def test_cluster_validation():
    with pytest.raises(ValueError):
        patroni.ClusterConfig(etcd_hosts=[])
    with pytest.raises(ValueError):
        cluster(watchdog_mode='sometimes')


def test_parse_etcd_hosts():
    assert patroni.parse_etcd_hosts('10.0.0.4:2379, 10.0.0.5:2379') == ['10.0.0.4:2379', '10.0.0.5:2379']
    with pytest.raises(ValueError):
        patroni.parse_etcd_hosts('10.0.0.4')
    with pytest.raises(ValueError):
        patroni.parse_etcd_hosts(' , ')


def test_first_node():
    assert patroni.is_first_node('lx-pgnode-01')
    assert patroni.is_first_node('pg-1')
    assert not patroni.is_first_node('lx-pgnode-02')


def test_generated_credentials():
    credentials = patroni.Credentials.generate(superuser='given')
    assert credentials.superuser == 'given'
    assert len({credentials.replicator, credentials.rewind, credentials.restapi}) == 3


def test_config():
    config = yaml.safe_load(patroni.render_config(cluster(postgres_version='16'), NODE, CREDENTIALS))

    assert config['scope'] == 'pgha-etcd-cluster'
    assert config['namespace'] == '/pgservice/'
    assert config['name'] == 'lx-pgnode-02'
    assert config['restapi']['listen'] == '10.0.0.5:8008'
    assert config['restapi']['authentication'] == {'username': 'patroni', 'password': 'api-pw'}
    assert config['etcd3']['hosts'] == ['10.0.0.4:2379', '10.0.0.5:2379', '10.0.0.6:2379']

    postgresql = config['postgresql']
    assert postgresql['listen'] == '10.0.0.5:5432'
    assert postgresql['data_dir'] == '/var/lib/postgresql/16/main'
    assert postgresql['bin_dir'] == '/usr/lib/postgresql/16/bin'
    assert postgresql['authentication']['superuser'] == {'username': 'postgres', 'password': 'su-pw'}
    assert postgresql['authentication']['replication'] == {'username': 'replicator', 'password': 'repl-pw'}
    assert postgresql['authentication']['rewind'] == {'username': 'rewind_user', 'password': 'rw-pw'}

    dcs = config['bootstrap']['dcs']
    assert dcs['ttl'] == 30
    assert dcs['postgresql']['use_pg_rewind'] is True
    assert dcs['postgresql']['parameters']['wal_level'] == 'replica'
    assert dcs['postgresql']['parameters']['log_directory'] == '/var/lib/postgresql/16/main/log'
    assert 'host replication replicator 127.0.0.1/32 scram-sha-256' in dcs['postgresql']['pg_hba']
    assert 'data-checksums' in config['bootstrap']['initdb']
    assert config['watchdog']['mode'] == 'required'


def test_config_tuning_survives_yaml():
    config = yaml.safe_load(patroni.render_config(cluster(), NODE, CREDENTIALS))
    parameters = config['bootstrap']['dcs']['postgresql']['parameters']
    # PostgreSQL wants these as strings, not YAML booleans
    assert parameters['hot_standby'] == 'on'
    assert parameters['log_line_prefix'] == '%t [%p-%l] %r %q%u@%d '


def test_unit():
    unit = patroni._patroni_unit(cluster())
    assert 'ExecStart=/usr/bin/patroni /etc/patroni/patroni.yml' in unit
    assert 'User=postgres' in unit


def test_active_firewall_fact():
    fact = patroni.ActiveFirewall()
    assert fact.process(['ufw']) == 'ufw'
    assert fact.process([]) is None


def test_verify_passes_password_in_environment(monkeypatch):
    monkeypatch.delenv('PGPASSWORD', raising=False)
    seen = []

    def executor(args, env=None):
        seen.append((args[0], (env or {}).get('PGPASSWORD'), os.environ.get('PGPASSWORD')))
        return (0, 'PostgreSQL 17', '') if args[0] == 'psql' else (1, '', 'no patroni')

    assert patroni.verify(NODE, 'secret', runner=StepRunner(executor))
    assert ('psql', 'secret', None) in seen
    assert ('patronictl', None, None) in seen


def test_verify_failed_connection_is_not_fatal():
    assert not patroni.verify(NODE, 'secret', runner=StepRunner(lambda args, env=None: (2, '', 'refused')))
