"""
Declarative external commands. Every command states what happens when it
fails, so call sites never decide that ad hoc.
"""

from dataclasses import dataclass, field
from enum import Enum
import logging
import os
import shlex
import subprocess
from typing import Callable


logger = logging.getLogger(__name__)


class FailurePolicy(Enum):
    FATAL = 'fatal'
    TOLERATE = 'tolerate'
    WARN = 'warn'


@dataclass
class Step:
    description: str
    args: list[str]
    policy: FailurePolicy = field(default=FailurePolicy.FATAL)
    # Extra environment variables, kept out of argv and of our own process
    env: dict[str, str] = field(default=None)

    def __str__(self):
        return shlex.join(self.args)


@dataclass
class StepResult:
    step: Step
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return self.stdout.strip()


class StepFailedError(Exception):
    def __init__(self, result: StepResult):
        self.result = result
        detail = result.stderr.strip() or result.stdout.strip()
        super().__init__(f'{result.step.description} failed (exit code {result.returncode})'
                         + (f': {detail}' if detail else ''))


Executor = Callable[[list[str], dict[str, str]], tuple[int, str, str]]


def subprocess_executor(args: list[str], env: dict[str, str] = None) -> tuple[int, str, str]:
    try:
        proc = subprocess.run(args, capture_output=True, text=True, env={**os.environ, **env} if env else None)
    except FileNotFoundError:
        return 127, '', f'{args[0]}: command not found'
    return proc.returncode, proc.stdout, proc.stderr


class StepRunner:
    def __init__(self, executor: Executor = None):
        self.executor = executor or subprocess_executor

    def run(self, step: Step) -> StepResult:
        logger.debug('Running: %s', step)
        returncode, stdout, stderr = self.executor(step.args, step.env)
        result = StepResult(step=step, returncode=returncode, stdout=stdout, stderr=stderr)
        if result.ok:
            return result

        if step.policy == FailurePolicy.FATAL:
            raise StepFailedError(result)
        elif step.policy == FailurePolicy.WARN:
            logger.warning('%s failed (exit code %d)', step.description, returncode)
        else:
            logger.debug('%s failed (exit code %d), ignoring', step.description, returncode)
        return result
