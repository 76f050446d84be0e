import click
from algolib.config import make_standard_algodb_workspace

from dbms.cli import dbms_group
from manage.cli import manage_group
from util.log import set_up_loggers, set_up_warnings


@click.group()
@click.pass_context
def task(ctx: click.Context) -> None:
    """🛢️ AlgoDB: PostgreSQL tuned for the hardware it runs on"""
    algodb_workspace = make_standard_algodb_workspace()
    ctx.obj = algodb_workspace

    log_path = algodb_workspace.config.log_path
    set_up_loggers(log_path)
    set_up_warnings(log_path)


task.add_command(manage_group)
task.add_command(dbms_group)


if __name__ == "__main__":
    task()
