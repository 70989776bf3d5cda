from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

app = FastAPI(title="Mock SMS Gateway", version="1.0.0")

# Numbers listed here fail delivery, for exercising error paths
UNDELIVERABLE = {"00000000000"}

sent: List[Dict[str, Any]] = []


class Message(BaseModel):
    to: str
    template: str
    params: Dict[str, Any] = {}


class Batch(BaseModel):
    messages: List[Message]


@app.get("/health")
def health(): return {"status": "ok"}

@app.post("/notify")
def notify(message: Message):
    if message.to in UNDELIVERABLE:
        return {"delivered": False, "reason": "undeliverable number"}
    sent.append(message.model_dump())
    return {"delivered": True}

@app.post("/notify/batch")
def notify_batch(batch: Batch):
    if not batch.messages:
        raise HTTPException(status_code=400, detail="empty batch")
    results = []
    for m in batch.messages:
        if m.to in UNDELIVERABLE:
            results.append({"to": m.to, "delivered": False, "reason": "undeliverable number"})
        else:
            sent.append(m.model_dump())
            results.append({"to": m.to, "delivered": True})
    failed = [r["to"] for r in results if not r["delivered"]]
    if failed:
        return {"delivered": False, "reason": f"undeliverable: {', '.join(failed)}", "results": results}
    return {"delivered": True, "count": len(batch.messages), "results": results}

@app.delete("/sent")
def reset():
    sent.clear()
    return {"status": "ok"}

@app.get("/sent")
def list_sent():
    return {"messages": sent}
