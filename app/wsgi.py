from app.ombro import create_app

app = create_app()
