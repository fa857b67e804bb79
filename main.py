# main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional, List, Dict

from fastapi import FastAPI, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.orm import Session

import models, schemas, config
from auth import (
    AuthError,
    Principal,
    authenticate_user,
    create_access_token,
    ensure_default_admin,
    get_current_user,
    get_password_hash,
    principal_from_token,
    require_admin,
)
from database import Base, engine, SessionLocal, get_db
from feed import AdItem, compose, is_lead
from locks import Acquire, LockCoordinator, LockProtocolError, LockRegistry

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

# Create tables (idempotent)
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = SessionLocal()
    try:
        ensure_default_admin(db)
    finally:
        db.close()
    yield
    await app.state.coordinator.wait_relays()


app = FastAPI(title="Newsroom Editorial API", version="1.0", lifespan=lifespan)
app.state.coordinator = LockCoordinator(LockRegistry(ttl_seconds=config.LOCK_TTL_SECONDS))


def get_coordinator(request: Request) -> LockCoordinator:
    return request.app.state.coordinator


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("%s %s failed", request.method, request.url.path)
    if config.APP_ENV == "production":
        message = "A server error occurred. Please try again later."
    else:
        message = str(exc) or "An unexpected error occurred."
    return JSONResponse(status_code=500, content={"message": message})


# Helper: find article or raise 404
def get_article_or_404(db: Session, article_id: int) -> models.Article:
    article = db.query(models.Article).filter(models.Article.id == article_id).first()
    if not article:
        raise HTTPException(status_code=404, detail="Article not found")
    return article


def get_ad_or_404(db: Session, ad_id: int) -> models.Advertisement:
    ad = db.query(models.Advertisement).filter(models.Advertisement.id == ad_id).first()
    if not ad:
        raise HTTPException(status_code=404, detail="Advertisement not found")
    return ad


# --- Root ---
@app.get("/", response_class=HTMLResponse)
def homepage():
    return """
    <html><head><title>Newsroom</title></head>
    <body>
      <h1>Newsroom API Running</h1>
      <p>Use /docs to interact with API.</p>
    </body></html>
    """


@app.get("/api/health")
def health():
    return {"ok": True}


# --- Auth ---
@app.post("/api/auth/login", response_model=schemas.TokenOut)
def login(body: schemas.LoginRequest, db: Session = Depends(get_db)):
    user = authenticate_user(db, body.email, body.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return {"access_token": create_access_token(user), "token_type": "bearer", "user": schemas.UserOut.model_validate(user)}


@app.get("/api/auth/me", response_model=schemas.UserOut)
def me(principal: Principal = Depends(get_current_user), db: Session = Depends(get_db)):
    return db.get(models.User, int(principal.user_id))


# --- Users (admin) ---
@app.post("/api/users", response_model=schemas.UserOut, status_code=201)
def create_user(u: schemas.UserCreate, db: Session = Depends(get_db), admin: Principal = Depends(require_admin)):
    existing = db.query(models.User).filter(models.User.email == u.email).first()
    if existing:
        raise HTTPException(status_code=409, detail="Email already registered")
    user = models.User(email=u.email, name=u.name, role=u.role, password_hash=get_password_hash(u.password))
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@app.get("/api/users", response_model=List[schemas.UserOut])
def list_users(db: Session = Depends(get_db), admin: Principal = Depends(require_admin)):
    return db.query(models.User).order_by(models.User.id).all()


# --- Articles ---
@app.get("/api/articles", response_model=List[schemas.ArticleOut])
def list_articles(
    category: Optional[str] = None,
    status_: Optional[str] = Query(None, alias="status"),
    db: Session = Depends(get_db),
):
    q = db.query(models.Article)
    if category:
        q = q.filter(models.Article.category == category)
    if status_:
        q = q.filter(models.Article.status == status_)
    return q.order_by(models.Article.created_at.desc(), models.Article.id.desc()).all()


@app.get("/api/articles/{article_id}", response_model=schemas.ArticleOut)
def get_article(article_id: int, db: Session = Depends(get_db)):
    # a read is not an edit: updated_at is kept as it was
    bumped = (
        db.query(models.Article)
        .filter(models.Article.id == article_id)
        .update(
            {
                models.Article.view_count: models.Article.view_count + 1,
                models.Article.updated_at: models.Article.updated_at,
            },
            synchronize_session=False,
        )
    )
    if not bumped:
        raise HTTPException(status_code=404, detail="Article not found")
    db.commit()
    return get_article_or_404(db, article_id)


@app.post("/api/articles", response_model=schemas.ArticleOut, status_code=201)
def create_article(
    payload: schemas.ArticleCreate,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    db_article = models.Article(
        title=payload.title,
        summary=payload.summary,
        content=payload.content,
        category=payload.category,
        status=payload.status,
        author_id=int(admin.user_id),
    )
    db.add(db_article)
    db.commit()
    db.refresh(db_article)
    return db_article


def _write_article(db: Session, article_id: int, payload: schemas.ArticleUpdate) -> schemas.ArticleOut:
    article = get_article_or_404(db, article_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(article, field, value)
    db.commit()
    db.refresh(article)
    return schemas.ArticleOut.model_validate(article)


# --- Save edits (release lock after the write commits) ---
@app.put("/api/articles/{article_id}", response_model=schemas.ArticleOut)
async def update_article(
    article_id: int,
    payload: schemas.ArticleUpdate,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
    coordinator: LockCoordinator = Depends(get_coordinator),
):
    # The saver holds the lock for the whole write, so nobody is granted
    # the article between the check and the commit.
    key = str(article_id)
    outcome, lock = coordinator.registry.acquire(key, admin)
    if outcome is Acquire.CONFLICT:
        raise HTTPException(status_code=403, detail=f"Article locked by {lock.user_name}")

    if outcome is Acquire.GRANTED:
        # taken only for this write and never announced, so released quietly
        try:
            return await run_in_threadpool(_write_article, db, article_id, payload)
        finally:
            coordinator.registry.release(key, admin.user_id)

    saved = await run_in_threadpool(_write_article, db, article_id, payload)
    await coordinator.release_after_save(key, admin)
    return saved


# --- Force unlock by an admin ---
@app.post("/api/articles/{article_id}/force-unlock")
async def force_unlock(
    article_id: int,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
    coordinator: LockCoordinator = Depends(get_coordinator),
):
    await run_in_threadpool(get_article_or_404, db, article_id)
    previous = await coordinator.force_release(str(article_id))
    return {"msg": "force-unlocked", "previous_locker": previous.as_payload() if previous else None}


@app.get("/api/locks", response_model=Dict[str, schemas.EditLockOut])
def list_locks(admin: Principal = Depends(require_admin), coordinator: LockCoordinator = Depends(get_coordinator)):
    return {aid: lock.as_payload() for aid, lock in coordinator.registry.snapshot().items()}


# --- Advertisements ---
@app.get("/api/ads", response_model=List[schemas.AdOut])
def list_ads(db: Session = Depends(get_db), admin: Principal = Depends(require_admin)):
    return db.query(models.Advertisement).order_by(models.Advertisement.created_at.desc(), models.Advertisement.id.desc()).all()


@app.get("/api/ads/sidebar", response_model=List[schemas.AdOut])
def sidebar_ads(db: Session = Depends(get_db)):
    return (
        db.query(models.Advertisement)
        .filter(models.Advertisement.status == "active", models.Advertisement.placement == "sidebar")
        .order_by(models.Advertisement.created_at.desc(), models.Advertisement.id.desc())
        .all()
    )


@app.post("/api/ads", response_model=schemas.AdOut, status_code=201)
def create_ad(payload: schemas.AdCreate, db: Session = Depends(get_db), admin: Principal = Depends(require_admin)):
    ad = models.Advertisement(**payload.model_dump())
    db.add(ad)
    db.commit()
    db.refresh(ad)
    return ad


@app.put("/api/ads/{ad_id}", response_model=schemas.AdOut)
def update_ad(
    ad_id: int,
    payload: schemas.AdUpdate,
    db: Session = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    ad = get_ad_or_404(db, ad_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(ad, field, value)
    db.commit()
    db.refresh(ad)
    return ad


@app.delete("/api/ads/{ad_id}", status_code=204)
def delete_ad(ad_id: int, db: Session = Depends(get_db), admin: Principal = Depends(require_admin)):
    ad = get_ad_or_404(db, ad_id)
    db.delete(ad)
    db.commit()


@app.post("/api/ads/{ad_id}/impression", status_code=201)
def record_impression(ad_id: int, db: Session = Depends(get_db)):
    ad = get_ad_or_404(db, ad_id)
    ad.impressions = models.Advertisement.impressions + 1
    db.commit()
    return {"message": "Impression recorded"}


@app.post("/api/ads/{ad_id}/click", status_code=201)
def record_click(ad_id: int, db: Session = Depends(get_db)):
    ad = get_ad_or_404(db, ad_id)
    ad.clicks = models.Advertisement.clicks + 1
    db.commit()
    return {"message": "Click recorded"}


# --- Reader feed ---
@app.get("/api/feed", response_model=schemas.FeedOut)
def get_feed(
    category: Optional[str] = None,
    limit: int = Query(config.FEED_DEFAULT_LIMIT, ge=1, le=100),
    db: Session = Depends(get_db),
):
    q = db.query(models.Article).filter(models.Article.status == "published")
    if category:
        q = q.filter(models.Article.category == category)
    articles = q.order_by(models.Article.created_at.desc(), models.Article.id.desc()).limit(limit).all()
    ads = (
        db.query(models.Advertisement)
        .filter(models.Advertisement.status == "active", models.Advertisement.placement == "in-feed")
        .order_by(models.Advertisement.created_at.desc(), models.Advertisement.id.desc())
        .all()
    )

    items = compose(articles, ads)
    out = []
    for position, item in enumerate(items):
        if isinstance(item, AdItem):
            data = schemas.AdOut.model_validate(item.ad).model_dump(mode="json")
        else:
            data = schemas.ArticleOut.model_validate(item.article).model_dump(mode="json")
        out.append({"type": item.kind, "lead": is_lead(items, position), "data": data})
    return {"items": out}


# --- Editing channel ---
def _principal_for_token(token: Optional[str]) -> Principal:
    db = SessionLocal()
    try:
        return principal_from_token(db, token)
    finally:
        db.close()


@app.websocket("/ws/locks")
async def editing_channel(websocket: WebSocket, token: Optional[str] = Query(None)):
    coordinator: LockCoordinator = websocket.app.state.coordinator

    try:
        principal = await run_in_threadpool(_principal_for_token, token)
    except AuthError as e:
        logger.info("Rejected editing connection: %s", e)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if not principal.is_admin:
        logger.info("Rejected editing connection from non-admin %s", principal.user_id)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    try:
        await coordinator.connect(websocket, principal)
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            try:
                text = message.get("text")
                if text is None:
                    raise LockProtocolError("binary frames are not accepted")
                await coordinator.handle(websocket, text)
            except LockProtocolError as e:
                logger.warning("Closing editor %s connection: %s", principal.user_id, e)
                await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
                break
    except WebSocketDisconnect:
        pass
    finally:
        await coordinator.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
