import logging
import click


LEVEL_COLORS = {
    logging.DEBUG: 'blue',
    logging.INFO: 'green',
    logging.WARNING: 'yellow',
    logging.ERROR: 'red',
    logging.CRITICAL: 'red',
}


class LogFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(datefmt='%Y-%m-%d %H:%M:%S')

    def format(self, record):
        level = click.style(f'[{record.levelname}]', fg=LEVEL_COLORS.get(record.levelno), bold=True)
        message = record.getMessage()
        if record.exc_info:
            message = f'{message}\n{self.formatException(record.exc_info)}'
        return f'{level} {self.formatTime(record, self.datefmt)} - {message}'


def setup_logging(verbose: bool = False):
    handler = logging.StreamHandler()
    handler.setFormatter(LogFormatter())
    logger = logging.getLogger('pghaops')
    logger.handlers = [handler]
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


def banner(title: str):
    click.echo()
    click.secho('=' * 48, fg='blue')
    click.secho(title, fg='blue')
    click.secho('=' * 48, fg='blue')


def summary(rows: list[tuple[str, str] | None]):
    """
    Prints label/value rows. None leaves an empty line.
    """
    click.echo()
    for row in rows:
        if row is None:
            click.echo()
        else:
            click.echo(f'  {row[0]}: {click.style(str(row[1]), fg="cyan")}')
    click.echo()


def lines(text: list[str]):
    for line in text:
        click.echo(line)


def confirm(question: str) -> bool:
    """
    Asks a yes/no question. Only the exact answer "yes" counts.
    """
    try:
        answer = click.prompt(f'{question} (yes/no)', default='', show_default=False)
    except click.Abort:
        return False
    return answer == 'yes'
