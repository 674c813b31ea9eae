from contextlib import asynccontextmanager
from typing import Optional

import anthropic
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

import database
from assistant import SessionOwnerError, SessionRegistry, build_assistant
from config import Settings
from executor import summarize_stats
from logging_config import setup_logging
from models import ChatRequest, ProcessingResult, Task, TaskCreate, TaskFilter, TaskUpdate
from telegram_bot import TelegramAdapter, handle_update

settings = Settings.from_env()
client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
registry = SessionRegistry(lambda owner_id: build_assistant(settings, owner_id, client))


@asynccontextmanager
async def lifespan(_app: FastAPI):
    # Startup
    setup_logging(settings.log_level, settings.log_dir)
    database.init_db()
    yield
    # Shutdown (nothing to do)

app = FastAPI(title="TaskPal", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/tasks")
def get_tasks(filters: TaskFilter = Depends()) -> list[Task]:
    return database.list_tasks_db(filters)


@app.post("/tasks")
def create_task(task_data: TaskCreate) -> Task:
    return database.create_task_db(
        title=task_data.title,
        description=task_data.description,
        priority=task_data.priority,
        category=task_data.category,
        tags=task_data.tags,
        due_date=task_data.due_date,
        owner_id=task_data.owner_id,
        status=task_data.status,
    )


@app.get("/tasks/search")
def search_tasks(q: str, owner_id: Optional[str] = None) -> list[Task]:
    return database.search_tasks_db(q, owner_id)


@app.get("/tasks/stats")
def get_stats(owner_id: Optional[str] = None, period: Optional[str] = None) -> dict:
    rows = database.task_stats_db(owner_id, period)
    return {"summary": summarize_stats(rows), "breakdown": rows}


@app.get("/tasks/{task_id}")
def get_task(task_id: str) -> Task:
    task = database.get_task_db(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task


@app.patch("/tasks/{task_id}")
def update_task(task_id: str, task_data: TaskUpdate) -> Task:
    result = database.update_task_db(task_id, **task_data.model_dump(exclude_unset=True))
    if not result:
        raise HTTPException(status_code=404, detail="Task not found")
    return result


@app.delete("/tasks/{task_id}")
def delete_task(task_id: str) -> dict:
    if not database.delete_task_db(task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    return {"status": "deleted"}


@app.post("/chat")
async def chat(chat_request: ChatRequest) -> ProcessingResult:
    """Run one conversational turn in the caller's session."""
    if not settings.api_key_configured:
        return ProcessingResult(success=False, message="API key not configured")
    try:
        return await registry.handle(chat_request.session_id, chat_request.message, owner_id=chat_request.owner_id)
    except SessionOwnerError:
        raise HTTPException(status_code=403, detail="Session belongs to another owner")


@app.get("/chat/{session_id}/context")
def get_chat_context(session_id: str) -> dict:
    if session_id not in registry:
        raise HTTPException(status_code=404, detail="Session not found")
    return registry.get(session_id).get_context_summary()


@app.delete("/chat/{session_id}")
def reset_chat(session_id: str) -> dict:
    if not registry.drop(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"status": "reset"}


@app.post("/telegram/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(default=None),
) -> dict[str, str]:
    if not settings.telegram_bot_token:
        raise HTTPException(status_code=400, detail="Telegram not configured")
    if settings.telegram_webhook_secret and x_telegram_bot_api_secret_token != settings.telegram_webhook_secret:
        raise HTTPException(status_code=401, detail="Invalid Telegram secret")

    update = await request.json()
    return await handle_update(update, registry, settings, TelegramAdapter(settings.telegram_bot_token))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
