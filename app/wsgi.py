from app.pudo import create_app

app = create_app()
