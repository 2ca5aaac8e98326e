from fastapi import Request

from duka_billing.services.dispatch_service import DispatchConfig, Dispatcher


def get_dispatcher(request: Request) -> Dispatcher:
    """The process-wide dispatcher started in the app lifespan.

    Falls back to an unstarted (inline) dispatcher when the lifespan did not run.
    """
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        dispatcher = Dispatcher(DispatchConfig.from_settings())
        request.app.state.dispatcher = dispatcher
    return dispatcher
