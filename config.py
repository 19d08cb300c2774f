import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


# Base URL for Pixabay Music
BASE_URL = "https://pixabay.com"

# Search results page (ordered by editor's choice)
SEARCH_URL = f"{BASE_URL}/music/search/?order=ec"

# Database settings
DB_PATH = os.getenv('DB_PATH', 'data/songs.db')
DB_POOL_SIZE = int(os.getenv('DB_POOL_SIZE', '20'))

# HTTP server settings
HOST = os.getenv('HOST', '0.0.0.0')
PORT = int(os.getenv('PORT', '3000'))

# Browser settings
HEADLESS = _env_bool('HEADLESS', True)

# Common user agents to rotate
USER_AGENTS = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.1 Safari/605.1.15',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/120.0',
]

# Page selectors. These track the site's generated class names and will drift.
SELECTORS = {
    'song_card': 'div.audioRow--nAm4Z',
    'title': '.title--7N7Nr',
    'author': '.name--yfZpi',
    'duration': '.duration--bLi2C',
    'detail_link': 'a[href*="/music/"]',
    'cover_image': 'img',
    'next_page': 'a[rel="next"]',
    'play_button': 'button[aria-label="paused"], button.playIcon--3-Qup, .container--vGyBg',
    'audio_element': 'audio > source, audio',
    'term_label': 'span.label--Ngqjq',
}

# Link path fragments identifying each taxonomy on a song's detail page
TERM_LINK_PATTERNS = {
    'genre': '/genre/',
    'mood': '/mood/',
    'theme': '/theme/',
}

# Response paths ending in one of these count as the song's audio file
AUDIO_EXTENSIONS = ('.mp3', '.m4a', '.ogg', '.wav', '.aac', '.flac')

# Timeouts (seconds)
PAGE_TIMEOUT = 120
RESULTS_TIMEOUT = 120
DETAIL_TIMEOUT = 180
AUDIO_CAPTURE_TIMEOUT = 15
PLAY_BUTTON_TIMEOUT = 10

# Pacing
SCRAPE_CONCURRENCY = 10
COOLDOWN_AFTER_PAGES = 10  # pause after every N pages
COOLDOWN_SECONDS = 30
BATCH_PAUSE_RANGE = (5.0, 8.0)  # jittered pause between page batches
SCROLL_STEP = 100  # pixels per auto-scroll tick
SCROLL_INTERVAL_MS = 100

# Run defaults
DEFAULT_LIMIT = 5
DEFAULT_MAX_PAGES = 50

# Sentinel values
UNKNOWN_TITLE = 'Unknown Title'
UNKNOWN_AUTHOR = 'Unknown Author'
UNKNOWN_DURATION = '0:00'
UNKNOWN_TERM = 'Unknown'

# Intermediate files
OUTPUT_JSON = Path(os.getenv('OUTPUT_JSON', 'songs_metadata.json'))
FAILED_SONGS_FILE = Path(os.getenv('FAILED_SONGS_FILE', 'songs_error.json'))

# Directories for downloaded files and debug snapshots
DOWNLOAD_DIR = Path(os.getenv('DOWNLOAD_DIR', 'downloads'))
DEBUG_DIR = Path(os.getenv('DEBUG_DIR', 'debug'))

# Debug mode (set to True for more verbose output)
DEBUG = _env_bool('DEBUG', False)
