from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from botflow.core.exceptions import register_exception_handlers
from botflow.core.logging import setup_logging
from botflow.api.v1.chat.router import router as chat_router
from botflow.api.v1.workflows.router import router as workflows_router

setup_logging()

app = FastAPI(
    title="Chatbot Workflow Engine",
    description="Goal-driven chatbot workflows with LLM reasoning and appointment booking",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include routers
app.include_router(chat_router, prefix="/api/v1", tags=["Chat"])
app.include_router(workflows_router, prefix="/api/v1", tags=["Workflows"])


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
