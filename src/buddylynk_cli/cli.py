import click

from buddylynk_cli.listen import listen
from buddylynk_cli.serve import serve
from buddylynk_cli.tokens import issue_token


@click.group()
def cli():
    """Buddylynk realtime - run the socket server and debug sessions."""


cli.add_command(serve, "serve")
cli.add_command(listen, "listen")
cli.add_command(issue_token, "issue-token")

if __name__ == '__main__':
    cli()
