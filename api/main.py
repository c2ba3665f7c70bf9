"""
PTFlow Scheduler API - scheduled coach-to-client messaging

Single FastAPI application with route groups:
- /api/process-scheduled-messages, /api/cron/*: dispatch of due messages
- /api/send-scheduled-message: single-recipient send (recurring job relay)
- /api/scheduled-messages/*: delivery history and stats
- /api/qstash-*, /api/start-recurring-schedule: QStash registration
"""

import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure logging - ensure INFO level logs are visible
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from routes import qstash, scheduled_messages

app = FastAPI(
    title="PTFlow Scheduler API",
    description="Scheduled message dispatch for coaches",
    version="1.0.0",
)

# CORS - allow frontend origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "https://ptflow.app",
        "https://www.ptflow.app",
    ],
    allow_origin_regex=r"https://ptflow-.*\.vercel\.app",  # Vercel preview URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    # Callers (QStash, the cron job, the web app) read `error`
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


@app.get("/health")
async def health():
    return {"status": "ok", "version": "1.0.0"}


# Mount routers
app.include_router(scheduled_messages.router, prefix="/api", tags=["scheduled-messages"])
app.include_router(qstash.router, prefix="/api", tags=["qstash"])
