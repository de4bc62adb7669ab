from typing import Annotated

from fastapi import Depends, Request

from slidereel.services.render_service import RenderService
from slidereel.services.storage_service import StorageService


def get_render_service(request: Request) -> RenderService:
    return request.app.state.render_service


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


RenderServiceDep = Annotated[RenderService, Depends(get_render_service)]
Storage = Annotated[StorageService, Depends(get_storage)]
