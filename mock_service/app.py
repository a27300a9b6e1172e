import asyncio
import random

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

app = FastAPI(title="Mock Quote Service")

QUOTES = [
    {"id": 1, "text": "Simplicity is prerequisite for reliability.", "category": "engineering"},
    {"id": 2, "text": "Premature optimization is the root of all evil.", "category": "engineering"},
    {"id": 3, "text": "Measure twice, cut once.", "category": "craft"},
    {"id": 4, "text": "What gets measured gets managed.", "category": "management"},
    {"id": 5, "text": "Fast is fine, but accuracy is everything.", "category": "craft"},
]


class Faults(BaseModel):
    delay_ms: float = 0.0
    error_rate: float = 0.0
    status: int = 503


app.state.faults = Faults()


@app.middleware("http")
async def inject_faults(request: Request, call_next):
    faults: Faults = request.app.state.faults
    if request.url.path.startswith("/_faults"):
        return await call_next(request)
    if faults.delay_ms:
        await asyncio.sleep(faults.delay_ms / 1000.0)
    if faults.error_rate and random.random() < faults.error_rate:
        return JSONResponse({"detail": "injected failure"}, status_code=faults.status)
    return await call_next(request)


@app.get("/", response_class=HTMLResponse)
async def frontend():
    return "<html><body><h1>Quotes</h1></body></html>"


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/quotes")
async def quotes():
    return QUOTES


@app.get("/api/quotes/random")
async def random_quote():
    return random.choice(QUOTES)


@app.get("/api/quotes/categories")
async def categories():
    return sorted({q["category"] for q in QUOTES})


@app.get("/api/quotes/{quote_id}")
async def quote(quote_id: int):
    for q in QUOTES:
        if q["id"] == quote_id:
            return q
    raise HTTPException(status_code=404, detail="quote not found")


@app.get("/_faults")
async def get_faults():
    return app.state.faults


@app.put("/_faults")
async def set_faults(faults: Faults):
    app.state.faults = faults
    return faults


# Run with: uvicorn mock_service.app:app --port 8001 --reload
