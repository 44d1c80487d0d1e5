# voting_api/wsgi.py
from voting_api import create_app

app = create_app()
