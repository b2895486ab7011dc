"""
Optional YAML configuration file. Its layout mirrors the command line, and
values become defaults of the matching options. For example:

    etcd:
      install:
        nodes: [lx-pgnode-01=10.0.0.4, lx-pgnode-02=10.0.0.5, lx-pgnode-03=10.0.0.6]
        token: pgha-etcd-cluster
    patroni:
      install:
        etcd_hosts: 10.0.0.4:2379,10.0.0.5:2379,10.0.0.6:2379
    azure-lb:
      setup:
        resource_group: rg-postgresql-ha

Options given on the command line or as PGHAOPS_* environment variables
take precedence over the file.
"""

import yaml


class ConfigError(Exception):
    pass


def load_config(path: str) -> dict:
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f'config file {path} not found')
    except yaml.YAMLError as e:
        raise ConfigError(f'config file {path} is not valid YAML: {e}')

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f'config file {path} must contain a mapping')
    return _normalize(data)


def _normalize(data: dict) -> dict:
    # click looks up default_map by parameter name, which uses underscores
    result = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = _normalize(value)
        else:
            result[key.replace('-', '_')] = value
    return result
