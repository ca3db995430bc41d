from app.saaskit import create_app

app = create_app()
