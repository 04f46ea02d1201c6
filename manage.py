"""Management script: `python manage.py init-db`, `python manage.py sync-subscriptions`."""

from dotenv import load_dotenv
from flask.cli import FlaskGroup

load_dotenv()

from minicrm import create_app  # noqa: E402


def _create_app():
    return create_app()


cli = FlaskGroup(create_app=_create_app)


if __name__ == "__main__":
    cli()
