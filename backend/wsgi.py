# backend/wsgi.py
from grc_app import create_app

app = create_app()
