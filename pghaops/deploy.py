import logging
from pyinfra.api import Config, Inventory, State
from pyinfra.api.connect import connect_all
from pyinfra.api.operation import add_op
from pyinfra.api.operations import run_ops


logger = logging.getLogger(__name__)


class DeployError(Exception):
    pass


def run_local(*operations: tuple):
    """
    Runs pyinfra operations against the machine we are running on, the
    same way `pyinfra @local deploy.py` would.

    Arguments:
        operations: (operation, kwargs) pairs, executed in order. Execution
            stops at the first failing command; nothing is rolled back.
    """
    inventory = Inventory((['@local'], {}))
    state = State(inventory, Config())
    connect_all(state)
    if state.failed_hosts:
        raise DeployError('could not connect to local host')

    for op, kwargs in operations:
        logger.debug('Adding operation %s', op.__name__)
        add_op(state, op, **kwargs)

    run_ops(state)
    if state.failed_hosts:
        raise DeployError('provisioning failed, see the output above')
