# WSGI entrypoint: `flask --app wsgi run` or any WSGI server pointed at wsgi:app.
from tavola import create_app

app = create_app()
