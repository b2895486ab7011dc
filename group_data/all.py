import os

_sudo = True

# Generate SSH config for Pyinfra
os.system('vagrant ssh-config >tests/vagrant_ssh_config')
ssh_config_file = 'tests/vagrant_ssh_config'

# Parse IP addresses from SSH config, etcd and Patroni need them for
# addressing each other
ip_addresses = {}
with open(ssh_config_file, 'r') as f:
    current_host = None
    for line in f.readlines():
        line = line.strip()
        if line.startswith('Host '):
            current_host = line.split(' ')[1]
        elif line.startswith('HostName'):
            ip_addresses[current_host] = line.split(' ')[1]

# Vagrant machines in bootstrap order
cluster_hosts = ['lx-pgnode-01', 'lx-pgnode-02', 'lx-pgnode-03']
