# Overview: WSGI entry point; FLASK_APP target for the CLI.

from ordercore import create_app

app = create_app()
