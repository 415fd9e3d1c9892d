from app.pos import create_app

app = create_app()
