from pipeaudit.cli import cli

cli()
