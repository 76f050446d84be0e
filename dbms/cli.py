import click
from algolib.config import AlgoDBWorkspace

from dbms.postgres.cli import postgres_group


@click.group(name="dbms")
@click.pass_obj
def dbms_group(algodb_workspace: AlgoDBWorkspace) -> None:
    pass


dbms_group.add_command(postgres_group)
