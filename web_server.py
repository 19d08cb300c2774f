#!/usr/bin/env python3
"""
FastAPI Web Server for the Pixabay Songs Database
Serves read/write API endpoints over the songs catalog
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

import config
from db_manager import SongsDatabase
from models import SongCreate, SongBatchCreate

logger = logging.getLogger(__name__)

WELCOME_TEXT = "🎵 Welcome to Pixabay Song Scraper API 🎧"

router = APIRouter()


def get_db(request: Request) -> SongsDatabase:
    return request.app.state.db


def _error_response(e: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(e)})


@router.get("/", response_class=PlainTextResponse)
async def home():
    return WELCOME_TEXT


@router.get("/api/health")
async def health_check(db: SongsDatabase = Depends(get_db)):
    """Health check endpoint"""
    try:
        return {"status": "healthy", "songs": db.count_songs()}
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return _error_response(e)


@router.get("/api/songs")
async def fetch_songs(db: SongsDatabase = Depends(get_db)):
    """Get all songs with their genres, moods and themes"""
    try:
        return db.list_songs()
    except Exception as e:
        logger.error(f"Error fetching songs: {e}")
        return _error_response(e)


@router.post("/api/song")
async def add_song(song: SongCreate, db: SongsDatabase = Depends(get_db)):
    """Add a single song"""
    try:
        song_id = db.insert_song(song.to_record())
        return {"message": "Song added successfully", "result": {"id": song_id}}
    except Exception as e:
        logger.error(f"Error adding song {song.title}: {e}")
        return _error_response(e)


@router.post("/api/songs")
async def add_multiple_songs(batch: SongBatchCreate, db: SongsDatabase = Depends(get_db)):
    """Add several songs in one transaction"""
    try:
        song_ids = db.insert_songs(song.to_record() for song in batch.songs)
        return {
            "message": f"{len(batch.songs)} songs added successfully",
            "result": {"ids": song_ids}
        }
    except Exception as e:
        logger.error(f"Error adding {len(batch.songs)} songs: {e}")
        return _error_response(e)


def create_app(db: Optional[SongsDatabase] = None) -> FastAPI:
    """Build the API around a songs database handle."""
    if db is None:
        db = SongsDatabase(config.DB_PATH)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        db.connect()
        db.create_tables()
        logger.info("🗄️ Database connected and initialized")

        yield

        # Shutdown
        db.close()
        logger.info("🗄️ Database disconnected")

    app = FastAPI(
        title="Pixabay Songs API",
        description="API for browsing and adding scraped Pixabay songs",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.db = db

    # CORS middleware for development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO if not config.DEBUG else logging.DEBUG,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    logger.info(f"🚀 Server running on http://localhost:{config.PORT}")
    uvicorn.run(app, host=config.HOST, port=config.PORT)
