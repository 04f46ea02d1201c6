import os

from dotenv import load_dotenv

load_dotenv()

from minicrm import create_app  # noqa: E402

config = os.getenv("APP_ENV", "production")

app = create_app(config)
