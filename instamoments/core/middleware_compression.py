from starlette.middleware.gzip import GZipMiddleware


def add_compression_middleware(app, minimum_size: int = 500):
    # Gallery pages are JSON lists of media dicts; small bodies are not worth compressing
    app.add_middleware(GZipMiddleware, minimum_size=minimum_size)
