from reconciler import create_app

app = create_app()
