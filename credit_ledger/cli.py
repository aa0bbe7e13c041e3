import asyncio
import sys

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated

import cappa
import granian

from cappa.output import error_format
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

from credit_ledger import __version__
from credit_ledger.core.conf import settings
from credit_ledger.database.db import create_tables, drop_tables
from credit_ledger.database.redis import redis_client
from credit_ledger.utils.console import console

output_help = '\nFor more information, try "[cyan]--help[/]"'


def parse_as_of(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise cappa.Exit(f'Invalid --as-of timestamp: {value}', code=1)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def init(*, rebuild: bool) -> None:
    panel_content = Text()
    panel_content.append('Database configuration', style='bold green')
    panel_content.append('\n\n  • URL: ')
    panel_content.append(f'{settings.DATABASE_URL}', style='yellow')
    panel_content.append('\n\nRedis configuration', style='bold green')
    panel_content.append('\n\n  • URL: ')
    if settings.REDIS_URL:
        panel_content.append(f'{settings.REDIS_URL}', style='yellow')
    else:
        panel_content.append('Not configured (expiry cache disabled)', style='dim')

    console.print(Panel(panel_content, title=f'credit-ledger v{__version__} initialization', border_style='cyan', padding=(1, 2)))

    if rebuild:
        ok = Prompt.ask('Are you sure to drop and rebuild all ledger tables?', choices=['y', 'n'], default='n')
        if ok.lower() != 'y':
            console.print('Initialization cancelled', style='yellow')
            return

    console.print('Initializing...', style='white')
    try:
        if rebuild:
            console.print('Dropping database tables', style='white')
            await drop_tables()
        if redis_client is not None:
            console.print('Dropping Redis cache', style='white')
            await redis_client.delete_prefix('next_expiry')
        console.print('Creating database tables', style='white')
        await create_tables()
        console.print('Initialization completed', style='green')
        console.print('\nTry [bold cyan]credit-ledger run[/bold cyan] to start the service')
    except Exception as e:
        raise cappa.Exit(f'Initialization failed: {e}', code=1)


def run(host: str, port: int, reload: bool, workers: int) -> None:  # noqa: FBT001
    url = f'http://{host}:{port}'
    docs_url = url + settings.FASTAPI_DOCS_URL
    openapi_url = url + (settings.FASTAPI_OPENAPI_URL or '')

    panel_content = Text()
    panel_content.append('Python version:', style='bold cyan')
    panel_content.append(f'{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}', style='white')

    panel_content.append('\nAPI request address: ', style='bold cyan')
    panel_content.append(f'{url}{settings.FASTAPI_API_V1_PATH}', style='blue')

    panel_content.append('\n\nEnvironment mode: ', style='bold green')
    env_style = 'yellow' if settings.ENVIRONMENT == 'dev' else 'green'
    panel_content.append(f'{settings.ENVIRONMENT.upper()}', style=env_style)

    panel_content.append('\nDodo Payments: ', style='bold green')
    panel_content.append(f'{settings.DODO_PAYMENTS_ENVIRONMENT}', style='yellow')

    if settings.ENVIRONMENT == 'dev':
        panel_content.append(f'\n\n📖 Swagger docs: {docs_url}', style='bold magenta')
        panel_content.append(f'\n📡 OpenAPI JSON: {openapi_url}', style='bold magenta')

    console.print(Panel(panel_content, title=f'credit-ledger v{__version__}', border_style='purple', padding=(1, 2)))
    granian.Granian(
        target='credit_ledger.main:app',
        interface='asgi',
        address=host,
        port=port,
        reload=not reload,
        workers=workers,
    ).serve()


async def sweep(as_of: datetime | None) -> None:
    from credit_ledger.src.billing.credits import CreditLedger
    from credit_ledger.src.billing.ledger import get_ledger_store

    try:
        result = await CreditLedger(get_ledger_store()).run_maintenance(as_of=as_of)
    except Exception as e:
        raise cappa.Exit(f'Maintenance failed: {e}', code=1)

    table = Table(title='Maintenance result', show_header=True, header_style='bold cyan')
    table.add_column('Step')
    table.add_column('Count', justify='right', style='yellow')
    for step, count in result.to_dict().items():
        table.add_row(step.replace('_', ' '), str(count))
    console.print(table)


async def dead_letters(limit: int) -> None:
    from credit_ledger.src.billing.external.dodo.webhooks import webhook_service

    records = await webhook_service.list_dead_letters(limit=limit)
    if not records:
        console.print('No dead-letter webhook events', style='green')
        return

    table = Table(title='Dead-letter webhook events', show_header=True, header_style='bold red')
    table.add_column('Event ID')
    table.add_column('Type', style='cyan')
    table.add_column('Attempts', justify='right')
    table.add_column('Updated', style='dim')
    table.add_column('Error')
    for record in records:
        table.add_row(
            record.id,
            record.event_type,
            str(record.attempts),
            record.updated_at.isoformat(),
            record.error_message or '',
        )
    console.print(table)


@cappa.command(help='Create the ledger tables', default_long=True)
@dataclass
class Init:
    rebuild: Annotated[
        bool,
        cappa.Arg(default=False, help='Drop existing tables before creating them'),
    ]

    async def __call__(self) -> None:
        await init(rebuild=self.rebuild)


@cappa.command(help='Run API service', default_long=True)
@dataclass
class Run:
    host: Annotated[
        str,
        cappa.Arg(
            default='127.0.0.1',
            help='Host IP address to serve on. Use `127.0.0.1` for local development, '
            '`0.0.0.0` to enable public access',
        ),
    ]
    port: Annotated[
        int,
        cappa.Arg(default=8000, help='Host port to serve on'),
    ]
    no_reload: Annotated[
        bool,
        cappa.Arg(default=False, help='Disable automatic reload on file changes'),
    ]
    workers: Annotated[
        int,
        cappa.Arg(default=1, help='Number of worker processes, must be used together with `--no-reload`'),
    ]

    def __call__(self) -> None:
        run(host=self.host, port=self.port, reload=self.no_reload, workers=self.workers)


@cappa.command(help='Expire grants, allocate yearly cycles and finalise cancellations', default_long=True)
@dataclass
class Sweep:
    as_of: Annotated[
        str | None,
        cappa.Arg(default=None, help='ISO-8601 timestamp to evaluate against (defaults to now)'),
    ] = None

    async def __call__(self) -> None:
        await sweep(parse_as_of(self.as_of))


@cappa.command(name='dead-letters', help='List webhook events parked on the dead-letter list', default_long=True)
@dataclass
class DeadLetters:
    limit: Annotated[
        int,
        cappa.Arg(default=50, help='Maximum number of events to show'),
    ] = 50

    async def __call__(self) -> None:
        await dead_letters(self.limit)


@cappa.command(help='Credit ledger command line interface', default_long=True)
@dataclass
class CreditLedgerCli:
    subcmd: cappa.Subcommands[Init | Run | Sweep | DeadLetters | None] = None


def main() -> None:
    output = cappa.Output(error_format=f'{error_format}\n{output_help}')
    asyncio.run(cappa.invoke_async(CreditLedgerCli, version=__version__, output=output))
