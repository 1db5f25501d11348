"""Allow ``python -m spacerelay``."""

from spacerelay.cli.app import app

app(prog_name="spacerelay")
