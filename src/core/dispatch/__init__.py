from src.core.dispatch.service import Dispatcher

__all__ = ["Dispatcher"]
