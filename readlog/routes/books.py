from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from readlog.db import get_db
from readlog.errors import UserNotFound
from readlog.gating import enforce_book_limit
from readlog.identity import get_current_user
from readlog.models import Book, User
from readlog.repository import count_books
from readlog.services.catalog import limits_for

router = APIRouter(prefix="/api", tags=["books"])

class BookCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    author: Optional[str] = Field(None, max_length=300)

@router.get("/books")
def list_books(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    if user.subscription is None:
        raise UserNotFound(f"User {user.id} has no subscription record.")
    books = db.query(Book).filter(Book.user_id == user.id).order_by(Book.created_at).all()
    limit = limits_for(user.subscription.tier).to_dict()["maxBooks"]
    return {
        "books": [{"id": b.id, "title": b.title, "author": b.author} for b in books],
        "count": len(books),
        "limit": limit,
    }

@router.post("/books", status_code=201)
def add_book(body: BookCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    enforce_book_limit(db, user)
    book = Book(user_id=user.id, title=body.title.strip(), author=body.author)
    db.add(book)
    db.commit()
    db.refresh(book)
    return {"id": book.id, "title": book.title, "author": book.author, "count": count_books(db, user.id)}
