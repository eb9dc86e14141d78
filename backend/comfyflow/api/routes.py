from fastapi import APIRouter
from .v1 import execution, graphs, queue, templates

api_router = APIRouter(prefix="/api", tags=["comfyflow"])

api_router.include_router(graphs.router, prefix="/v1", tags=["graphs"])
api_router.include_router(templates.router, prefix="/v1", tags=["templates"])
api_router.include_router(execution.router, prefix="/v1", tags=["execution"])
api_router.include_router(queue.router, prefix="/v1", tags=["queue"])


@api_router.get("/")
def read_root():
    return {"message": "comfyflow is running"}
