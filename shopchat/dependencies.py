from fastapi import HTTPException, Request

from shopchat.services.coordinator import Coordinator


def get_coordinator(request: Request) -> Coordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Coordinator not started")
    return coordinator
