from fastapi import APIRouter

from herald.api.v1.endpoints import deadletters

router = APIRouter()
router.include_router(deadletters.router)
