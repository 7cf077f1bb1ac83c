"""Application entry point for the Backspace venue API."""

from backspace.logger import setup_logger
from backspace.webapp import create_app

setup_logger()
app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
