import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import LOG_LEVEL
from .db import init_db
from .errors import SigningError
from .routers import documents, jobs, requests, signing

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Signing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def on_startup():
    init_db()

@app.exception_handler(SigningError)
def signing_error_handler(request: Request, exc: SigningError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

app.include_router(documents.router, prefix="/api/documents", tags=["documents"])
app.include_router(requests.router, prefix="/api/requests", tags=["requests"])
app.include_router(signing.router, prefix="/api/sign", tags=["signing"])
app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])

@app.get("/")
def root():
    return {"ok": True, "service": "signing-api"}
