from rich.markup import escape
from rich.table import Table


PREFIXES = {
    'ack': '[bold blue][*][/bold blue]',
    'info': '[bold cyan][i][/bold cyan]',
    'success': '[bold green][+][/bold green]',
    'warning': '[bold yellow][!][/bold yellow]',
    'failure': '[bold red][-][/bold red]',
}


def cprint(obj, message, kind='info', end='\n'):
    obj.console.print('{} {}'.format(PREFIXES[kind], escape(str(message))), end=end, highlight=False)


def cprint_table(obj, title, columns, rows):
    table = Table(title=title)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*[str(value) for value in row])
    obj.console.print(table)
