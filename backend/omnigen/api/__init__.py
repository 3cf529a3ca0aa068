from omnigen.api.routes import router

__all__ = ["router"]
