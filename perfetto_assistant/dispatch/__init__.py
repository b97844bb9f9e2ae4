from perfetto_assistant.dispatch.handlers import EventDispatcher, HandlerResult

__all__ = ["EventDispatcher", "HandlerResult"]
