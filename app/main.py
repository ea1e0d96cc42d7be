from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

from .friendship import routers as friend_router
from .chat import routers as chat_router
from .community import routers as community_router

from .core.config import settings
from .core.dependencies import get_current_user_id
from .core.middleware import logging_middleware
from .utils.logging_config import setup_logging

setup_logging(settings.log_level, settings.log_json)

app = FastAPI(title="Ride Community API")
app.include_router(friend_router.router, prefix="/friends", tags=["Friendship"])
app.include_router(chat_router.router, prefix="/chat", tags=["Chat"])
app.include_router(community_router.router, prefix="/community", tags=["Community"])

app.middleware("http")(logging_middleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# For testing auth purposes
@app.get("/protected")
def protected_route(user_id: str = Depends(get_current_user_id)):
    return {"message": f"Hello {user_id}, you are authenticated!"}
