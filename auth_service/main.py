from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, EmailStr
from sqlalchemy import select, or_
from common.error_handling import add_error_handlers
from common.security import mint_user_jwt, verify_token
from common.tracing import auth_tracer, tracing_middleware
from settlement_service.db import SessionLocal
from settlement_service.models import Base, User

@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=app.state.session_factory.kw["bind"])
    yield

app = FastAPI(title="Auth Service", lifespan=lifespan)
app.state.session_factory = SessionLocal
add_error_handlers(app)

@app.middleware("http")
async def trace_requests(request: Request, call_next):
    return await tracing_middleware(request, call_next, auth_tracer)

class RegisterRequest(BaseModel):
    username: str
    email: EmailStr

class LoginRequest(BaseModel):
    username: str

@app.post("/register", status_code=201)
async def register(req: RegisterRequest):
    with app.state.session_factory() as db:
        taken = db.scalar(select(User.id).where(or_(User.username == req.username, User.email == req.email)))
        if taken:
            raise HTTPException(409, "Username or email already registered")
        # everyone starts as a plain user; seller comes from an approved verification
        user = User(username=req.username, email=req.email, role="user")
        db.add(user)
        db.commit()
        return {"user_id": user.id, "username": user.username, "role": user.role}

@app.post("/login")
async def login(req: LoginRequest):
    # username-only: credentials are not stored
    with app.state.session_factory() as db:
        user = db.scalar(select(User).where(User.username == req.username))
        if user is None:
            raise HTTPException(401, "Invalid credentials")
        token = mint_user_jwt(sub=user.id, claims={"scope": "user"})
        return {"access_token": token, "token_type": "bearer", "user_id": user.id}

@app.get("/introspect")
async def introspect(token: str):
    try:
        return verify_token(token)
    except Exception as e:
        raise HTTPException(status_code=401, detail=str(e))
