from reback.cli import cli

cli(prog_name='reback')
