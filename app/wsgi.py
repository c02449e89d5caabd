from app.adminhub import create_app

app = create_app()
