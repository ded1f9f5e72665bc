from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, ExecutionTimeout, PyMongoError

import settings
from auth import authenticate, create_access_token, get_current_account, public_user, register_account, require_role
from database import db, ensure_indexes, get_db
from errors import MedShareError, Unavailable
from logger import configure_logging, get_logger
from notifier import EmailNotifier
from scheduler import ExpiryScheduler, build_engine
from schemas import (ADMIN, DONOR, RECIPIENT, DonationBody, LoginBody, LotUpdateBody, Principal, RegisterBody,
                     ReviewBody, Token)
from workflow import WorkflowEngine

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    scheduler = None
    if db is not None:
        try:
            ensure_indexes(db)
        except PyMongoError:
            logger.exception("Could not create indexes")
        if settings.SCHEDULER_ENABLED:
            scheduler = ExpiryScheduler(build_engine)
            scheduler.start()
    yield
    if scheduler is not None:
        scheduler.stop()


# FastAPI app
app = FastAPI(title="MedShare API", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CLIENT_ORIGIN.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_engine(database: Database = Depends(get_db)) -> WorkflowEngine:
    return WorkflowEngine(database, notifier=EmailNotifier(database))


# Error responses
@app.exception_handler(MedShareError)
async def medshare_error_handler(request: Request, exc: MedShareError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
        errors.append(f"{field}: {error.get('msg')}" if field else error.get("msg"))
    return JSONResponse(status_code=400, content={"detail": "Validation failed", "errors": errors})


@app.exception_handler(ConnectionFailure)
@app.exception_handler(ExecutionTimeout)
async def store_unavailable_handler(request: Request, exc: PyMongoError):
    logger.error("Database unavailable during %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=Unavailable.status_code, content={"detail": Unavailable.default_message})


@app.get("/")
def read_root():
    return {"app": "MedShare API", "status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if settings.DATABASE_URL else "❌ Not Set",
        "database_name": settings.DATABASE_NAME,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["collections"] = db.list_collection_names()
            response["connection_status"] = "Connected"
            response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️  Error: {str(e)[:80]}"
    return response


# Auth Endpoints
@app.post("/auth/register", status_code=201)
def register(body: RegisterBody, database: Database = Depends(get_db)):
    user = register_account(database, body)
    return {"message": "User created successfully", "user": user}


@app.post("/auth/login", response_model=Token)
def login(body: LoginBody, database: Database = Depends(get_db)):
    user = authenticate(database, body.email, body.password)
    token = create_access_token({"sub": str(user["_id"]), "role": user["role"], "email": user["email"]})
    return {"access_token": token, "token_type": "bearer", "user": public_user(user)}


@app.get("/auth/me")
def read_me(me: Principal = Depends(get_current_account), database: Database = Depends(get_db)):
    return public_user(database["user"].find_one({"_id": ObjectId(me.id)}))


# Medicines
@app.post("/medicines/add", status_code=201)
def add_medicine(body: DonationBody, me: Principal = Depends(require_role(DONOR)),
                 engine: WorkflowEngine = Depends(get_engine)):
    lot = engine.donate(me.id, body.name, body.expiry_date, body.quantity,
                        description=body.description, category=body.category)
    return {"message": "Medicine added successfully", "medicine": lot}


@app.get("/medicines")
def list_medicines(
    name: Optional[str] = None,
    category: Optional[str] = None,
    expiry_before: Optional[date] = Query(None, alias="expiryBefore"),
    expiry_after: Optional[date] = Query(None, alias="expiryAfter"),
    _: Principal = Depends(get_current_account),
    engine: WorkflowEngine = Depends(get_engine),
):
    return engine.list_available(name=name, category=category, expiry_before=expiry_before,
                                 expiry_after=expiry_after)


@app.get("/medicines/search")
def search_medicines(
    name: Optional[str] = None,
    category: Optional[str] = None,
    expiry_before: Optional[date] = Query(None, alias="expiryBefore"),
    _: Principal = Depends(get_current_account),
    engine: WorkflowEngine = Depends(get_engine),
):
    medicines = engine.list_available(name=name, category=category, expiry_before=expiry_before)
    return {
        "medicines": medicines,
        "count": len(medicines),
        "filters": {"name": name, "category": category, "expiryBefore": expiry_before},
    }


@app.get("/medicines/donor/medicines")
def donor_medicines(me: Principal = Depends(require_role(DONOR)), engine: WorkflowEngine = Depends(get_engine)):
    return engine.donor_lots(me.id)


@app.get("/medicines/recipient/requests")
def recipient_medicine_requests(me: Principal = Depends(require_role(RECIPIENT)),
                                engine: WorkflowEngine = Depends(get_engine)):
    return engine.recipient_requests(me.id)


@app.post("/medicines/request/{medicine_id}")
def request_medicine(medicine_id: str, me: Principal = Depends(require_role(RECIPIENT)),
                     engine: WorkflowEngine = Depends(get_engine)):
    lot, request = engine.request_lot(me.id, medicine_id)
    return {"message": "Medicine requested successfully", "medicine": lot, "request": request}


@app.put("/medicines/update/{medicine_id}")
def update_medicine(medicine_id: str, body: LotUpdateBody, me: Principal = Depends(require_role(DONOR, ADMIN)),
                    engine: WorkflowEngine = Depends(get_engine)):
    lot = engine.update_lot(me, medicine_id, quantity=body.quantity, expiry_date=body.expiry_date,
                            status=body.status)
    return {"message": "Medicine updated successfully", "medicine": lot}


@app.delete("/medicines/{medicine_id}")
def remove_medicine(medicine_id: str, _: Principal = Depends(require_role(ADMIN)),
                    engine: WorkflowEngine = Depends(get_engine)):
    engine.remove_lot(medicine_id)
    return {"message": "Medicine removed"}


def review_lot(engine: WorkflowEngine, me: Principal, medicine_id: str, action: str) -> dict:
    if action == "approve":
        lot, request = engine.approve_lot(me.id, medicine_id)
        message = "Medicine request approved"
    else:
        lot, request = engine.reject_lot(me.id, medicine_id)
        message = "Medicine request rejected"
    return {"message": message, "medicine": lot, "request": request, "adminEmail": settings.ADMIN_EMAIL}


@app.put("/medicines/approve/{medicine_id}")
def review_medicine(medicine_id: str, body: ReviewBody, me: Principal = Depends(require_role(ADMIN)),
                    engine: WorkflowEngine = Depends(get_engine)):
    return review_lot(engine, me, medicine_id, body.action)


# Requests
@app.post("/requests/{medicine_id}", status_code=201)
def create_request(medicine_id: str, me: Principal = Depends(require_role(RECIPIENT)),
                   engine: WorkflowEngine = Depends(get_engine)):
    lot, request = engine.request_lot(me.id, medicine_id)
    return {"message": "Request submitted", "request": request, "medicine": lot}


@app.get("/requests/my")
def my_requests(me: Principal = Depends(require_role(RECIPIENT)), engine: WorkflowEngine = Depends(get_engine)):
    return engine.recipient_requests(me.id)


@app.get("/requests")
def list_requests(me: Principal = Depends(require_role(ADMIN)), engine: WorkflowEngine = Depends(get_engine)):
    items = engine.all_requests()
    for it in items:
        it["admin_id"] = me.id
        it["admin_email"] = settings.ADMIN_EMAIL
        it["timestamp"] = it.get("processed_at") or it.get("requested_at")
    return items


@app.patch("/requests/{request_id}/approve")
def approve_request(request_id: str, me: Principal = Depends(require_role(ADMIN)),
                    engine: WorkflowEngine = Depends(get_engine)):
    lot, request = engine.approve(me.id, request_id)
    return {"message": "Request approved", "request": request, "medicine": lot, "adminEmail": settings.ADMIN_EMAIL}


@app.patch("/requests/{request_id}/reject")
def reject_request(request_id: str, me: Principal = Depends(require_role(ADMIN)),
                   engine: WorkflowEngine = Depends(get_engine)):
    lot, request = engine.reject(me.id, request_id)
    return {"message": "Request rejected", "request": request, "medicine": lot, "adminId": me.id,
            "adminEmail": settings.ADMIN_EMAIL, "timestamp": request["processed_at"]}


# Admin
@app.get("/admin/medicines")
def admin_medicines(_: Principal = Depends(require_role(ADMIN)), engine: WorkflowEngine = Depends(get_engine)):
    return engine.admin_lots()


@app.get("/admin/users")
def admin_users(_: Principal = Depends(require_role(ADMIN)), database: Database = Depends(get_db)):
    return [public_user(u) for u in database["user"].find().sort("created_at", -1)]


@app.put("/admin/approve/{medicine_id}")
def admin_review_medicine(medicine_id: str, body: ReviewBody, me: Principal = Depends(require_role(ADMIN)),
                          engine: WorkflowEngine = Depends(get_engine)):
    return review_lot(engine, me, medicine_id, body.action)


@app.get("/admin/stats")
def admin_stats(_: Principal = Depends(require_role(ADMIN)), engine: WorkflowEngine = Depends(get_engine)):
    stats = engine.stats()
    return {
        "totalUsers": stats["users"],
        "totalDonors": stats["donors"],
        "totalRecipients": stats["recipients"],
        "totalDonations": stats["lots"],
        "totalRequests": stats["requests"],
        "approved": stats["approved"],
        "rejected": stats["rejected"],
        "availableMedicines": stats["available_lots"],
        "expiredMedicines": stats["expired_lots"],
    }


@app.get("/admin/analytics/overview")
def admin_analytics_overview(_: Principal = Depends(require_role(ADMIN)),
                             engine: WorkflowEngine = Depends(get_engine)):
    stats = engine.stats()
    return {
        "totalDonations": stats["lots"],
        "totalRequests": stats["requests"],
        "approvals": stats["approved"],
        "rejections": stats["rejected"],
    }


@app.post("/admin/sweep")
def admin_run_sweep(_: Principal = Depends(require_role(ADMIN)), engine: WorkflowEngine = Depends(get_engine)):
    result = ExpiryScheduler(lambda: engine).run_once()
    return result.model_dump()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
