from app.breakage import create_app

app = create_app()
