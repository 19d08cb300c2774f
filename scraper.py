#!/usr/bin/env python3
"""
Pixabay Music Scraper

Walks the Pixabay Music search results with Playwright, collects the song
cards of each page, then visits every song's detail page to read its genres,
moods and themes and to capture a playable audio URL.
"""

import asyncio
import random
import logging
import argparse
from pathlib import Path
from typing import AsyncIterator, List, Optional
from urllib.parse import urljoin, urlparse
from bs4 import BeautifulSoup
from playwright.async_api import (
    async_playwright, Page, Browser, BrowserContext, ElementHandle,
    TimeoutError as PlaywrightTimeoutError,
)

import config
from models import ExtractionRecord, TermNamespace, clean_term_names

logger = logging.getLogger(__name__)

# Scrolls the results page one step at a time until the bottom is reached,
# so lazily rendered cards are attached before they are read.
AUTO_SCROLL_JS = '''
    async ([distance, interval]) => {
        await new Promise((resolve) => {
            let totalHeight = 0;
            const timer = setInterval(() => {
                const scrollHeight = document.body.scrollHeight;
                window.scrollBy(0, distance);
                totalHeight += distance;
                if (totalHeight >= scrollHeight - window.innerHeight) {
                    clearInterval(timer);
                    resolve();
                }
            }, interval);
        });
    }
'''

TERM_LABELS_JS = 'els => els.map(el => (el.innerText || el.textContent || "").trim())'

AUDIO_SOURCE_JS = '''
    (selector) => {
        const el = document.querySelector(selector);
        if (!el) return null;
        return el.currentSrc || el.src || null;
    }
'''


def is_audio_url(url: Optional[str]) -> bool:
    """True when the URL path ends in a known audio file extension."""
    if not url:
        return False
    return urlparse(url).path.lower().endswith(config.AUDIO_EXTENSIONS)


def _card_text(card, selector: str, fallback: str) -> str:
    element = card.select_one(selector)
    text = element.get_text(strip=True) if element else ''
    return text or fallback


def parse_song_cards(html: str, limit: int, base_url: str = config.BASE_URL) -> List[ExtractionRecord]:
    """
    Read the song cards of a results page, in document order.

    Cards without a link to a detail page are dropped since they cannot be
    enriched. At most ``limit`` records are returned.
    """
    if limit <= 0:
        return []

    soup = BeautifulSoup(html, 'html.parser')
    songs = []
    for card in soup.select(config.SELECTORS['song_card']):
        if len(songs) >= limit:
            break

        title = _card_text(card, config.SELECTORS['title'], config.UNKNOWN_TITLE)
        author = _card_text(card, config.SELECTORS['author'], config.UNKNOWN_AUTHOR)
        duration = _card_text(card, config.SELECTORS['duration'], config.UNKNOWN_DURATION)

        link = card.select_one(config.SELECTORS['detail_link'])
        href = link.get('href') if link else None
        if not href:
            logger.warning(f"⚠️ No URL found for: {title}")
            continue

        image = card.select_one(config.SELECTORS['cover_image'])
        cover = image.get('src') if image else None

        songs.append(ExtractionRecord(
            title=title,
            author=author,
            duration=duration,
            detail_url=urljoin(base_url, href),
            cover_image_url=urljoin(base_url, cover) if cover else None,
        ))

    return songs


class PixabayMusicScraper:
    """Pixabay Music scraper using Playwright."""

    def __init__(
        self,
        headless: bool = config.HEADLESS,
        concurrency: int = config.SCRAPE_CONCURRENCY,
        cooldown_after_pages: int = config.COOLDOWN_AFTER_PAGES,
        cooldown_seconds: float = config.COOLDOWN_SECONDS,
        batch_pause_range: tuple = config.BATCH_PAUSE_RANGE,
        audio_timeout: float = config.AUDIO_CAPTURE_TIMEOUT,
        detail_timeout: float = config.DETAIL_TIMEOUT,
        download_covers: bool = False,
        download_audio: bool = False,
        download_dir: Path = config.DOWNLOAD_DIR,
    ):
        self.playwright = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self.headless = headless
        self.concurrency = max(1, concurrency)
        self.cooldown_after_pages = cooldown_after_pages
        self.cooldown_seconds = cooldown_seconds
        self.batch_pause_range = batch_pause_range
        self.audio_timeout = audio_timeout
        self.detail_timeout = detail_timeout
        self.download_covers = download_covers
        self.download_audio = download_audio
        self.download_dir = Path(download_dir)
        self._semaphore = asyncio.Semaphore(self.concurrency)

    async def initialize(self) -> None:
        """Initialize the Playwright browser with optimized settings."""
        try:
            self.playwright = await async_playwright().start()

            self.browser = await self.playwright.chromium.launch(
                headless=self.headless,
                args=[
                    '--no-sandbox',
                    '--disable-setuid-sandbox',
                    '--disable-dev-shm-usage',
                    '--no-first-run',
                    '--disable-gpu'
                ]
            )

            # Create browser context with random user agent
            self.context = await self.browser.new_context(
                user_agent=random.choice(config.USER_AGENTS),
                viewport={'width': random.randint(1200, 1920), 'height': random.randint(800, 1080)},
                locale='en-US',
                java_script_enabled=True
            )

            self.page = await self.context.new_page()

            logger.info("Browser initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize browser: {str(e)}")
            await self.close()
            raise

    async def close(self) -> None:
        """Close the browser and clean up resources."""
        try:
            if self.page:
                await self.page.close()
            if self.context:
                await self.context.close()
            if self.browser:
                await self.browser.close()
            if self.playwright:
                await self.playwright.stop()
            logger.info("Browser closed successfully")
        except Exception as e:
            logger.error(f"Error closing browser: {str(e)}")
        finally:
            self.page = self.context = self.browser = self.playwright = None

    async def _random_delay(self, min_delay: float, max_delay: float) -> None:
        """Sleep for a random duration in the given range."""
        delay = random.uniform(min_delay, max_delay)
        if delay <= 0:
            return
        logger.debug(f"Waiting for {delay:.2f} seconds...")
        await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Results pages
    # ------------------------------------------------------------------

    async def _load_search_page(self, url: str) -> bool:
        logger.info("🚀 Navigating to Pixabay Music page...")
        try:
            await self.page.goto(url, wait_until='networkidle', timeout=config.PAGE_TIMEOUT * 1000)
            return True
        except Exception as e:
            logger.error(f"Error navigating to {url}: {str(e)}")
            return False

    async def _auto_scroll(self) -> None:
        try:
            await self.page.evaluate(AUTO_SCROLL_JS, [config.SCROLL_STEP, config.SCROLL_INTERVAL_MS])
        except Exception as e:
            logger.warning(f"⚠️ Scroll interrupted or navigation occurred: {e}")

    async def _wait_for_results(self) -> bool:
        try:
            await self.page.wait_for_selector(
                config.SELECTORS['song_card'],
                state='visible',
                timeout=config.RESULTS_TIMEOUT * 1000
            )
            return True
        except Exception as e:
            logger.error(f"Song cards did not appear: {e}")
            await self._save_debug_snapshot('results')
            return False

    async def _save_debug_snapshot(self, label: str) -> None:
        """Save the current page HTML and a screenshot for selector maintenance."""
        try:
            config.DEBUG_DIR.mkdir(parents=True, exist_ok=True)
            html_path = config.DEBUG_DIR / f"{label}.html"
            html_path.write_text(await self.page.content(), encoding='utf-8')
            await self.page.screenshot(path=str(config.DEBUG_DIR / f"{label}.png"))
            logger.info(f"📝 Saved debug snapshot to {html_path}")
        except Exception as e:
            logger.debug(f"Could not save debug snapshot: {e}")

    async def _scrape_summaries(self, remaining: int) -> List[ExtractionRecord]:
        try:
            html = await self.page.content()
        except Exception as e:
            logger.error(f"Error reading results page: {e}")
            return []
        return parse_song_cards(html, remaining)

    async def _find_next_button(self) -> Optional[ElementHandle]:
        """The enabled next-page button, or None when this is the last page."""
        try:
            next_button = await self.page.query_selector(config.SELECTORS['next_page'])
            if not next_button:
                logger.info("🚫 No next page button found. Stopping...")
                return None

            disabled = await next_button.get_attribute('disabled')
            aria_disabled = await next_button.get_attribute('aria-disabled')
            if disabled is not None or aria_disabled == 'true':
                logger.info("🚫 Next page button is disabled. Stopping...")
                return None

            return next_button

        except Exception as e:
            logger.error(f"❌ Error looking up the next page button: {e}")
            return None

    async def _go_to_next_page(self, next_button: ElementHandle) -> bool:
        try:
            await next_button.click()
            await self.page.wait_for_load_state('domcontentloaded', timeout=config.PAGE_TIMEOUT * 1000)
            return True

        except Exception as e:
            logger.error(f"❌ Error navigating to the next page: {e}")
            return False

    # ------------------------------------------------------------------
    # Detail pages
    # ------------------------------------------------------------------

    async def _extract_terms(self, page: Page, namespace: TermNamespace) -> List[str]:
        """Label texts of the links into one taxonomy on a detail page."""
        pattern = config.TERM_LINK_PATTERNS[namespace.value]
        selector = f'a[href*="{pattern}"] {config.SELECTORS["term_label"]}'
        try:
            labels = await page.eval_on_selector_all(selector, TERM_LABELS_JS)
        except Exception as e:
            logger.warning(f"Could not read {namespace.value} labels: {e}")
            return []
        return clean_term_names(labels)

    async def _click_play(self, page: Page) -> None:
        try:
            button = await page.wait_for_selector(
                config.SELECTORS['play_button'],
                state='visible',
                timeout=config.PLAY_BUTTON_TIMEOUT * 1000
            )
            if button:
                await button.click()
        except PlaywrightTimeoutError:
            logger.warning("⚠️ Play button not found.")
        except Exception as e:
            logger.warning(f"⚠️ Could not click play: {e}")

    async def _capture_audio_url(self, page: Page) -> Optional[str]:
        """
        Press play and return the first audio file the page fetches.

        The response listener is raced against ``audio_timeout``; whichever
        way the race ends the listener is removed from the page.
        """
        found = asyncio.get_running_loop().create_future()

        def on_response(response) -> None:
            if not found.done() and is_audio_url(response.url):
                found.set_result(response.url)

        async def play_and_wait() -> str:
            await self._click_play(page)
            return await found

        page.on('response', on_response)
        try:
            return await asyncio.wait_for(play_and_wait(), timeout=self.audio_timeout)
        except asyncio.TimeoutError:
            logger.debug("No audio response captured before the deadline")
            return None
        finally:
            page.remove_listener('response', on_response)

    async def _fallback_audio_url(self, page: Page) -> Optional[str]:
        """Read the resolved source of the page's audio element."""
        try:
            src = await page.evaluate(AUDIO_SOURCE_JS, config.SELECTORS['audio_element'])
        except Exception as e:
            logger.debug(f"Audio element lookup failed: {e}")
            return None
        return src or None

    async def _enrich_song(self, record: ExtractionRecord) -> Optional[ExtractionRecord]:
        """Fill taxonomy and audio URL from the detail page; None drops the song."""
        async with self._semaphore:
            # Response interception is bound to a page, so every song gets its own
            page = await self.context.new_page()
            try:
                try:
                    await page.goto(
                        record.detail_url,
                        wait_until='networkidle',
                        timeout=self.detail_timeout * 1000
                    )
                except PlaywrightTimeoutError:
                    logger.warning(f"⚠️ Timeout while loading: {record.detail_url}. Skipping this song...")
                    return None
                except Exception as e:
                    logger.error(f"❌ Error navigating to song URL {record.detail_url}: {e}")
                    return None

                record.genres = await self._extract_terms(page, TermNamespace.GENRE)
                record.moods = await self._extract_terms(page, TermNamespace.MOOD)
                record.themes = await self._extract_terms(page, TermNamespace.THEME)

                audio_url = await self._capture_audio_url(page)
                if not audio_url:
                    audio_url = await self._fallback_audio_url(page)
                    if audio_url:
                        logger.info(f"🎧 Fallback URL found for {record.title}: {audio_url}")

                if audio_url:
                    record.audio_url = audio_url
                else:
                    logger.warning(f"⚠️ No audio URL found for: {record.title}")

                return record
            finally:
                try:
                    await page.close()
                except Exception as e:
                    logger.debug(f"Error closing detail page: {e}")

    async def download_file(self, url: str, filename: str) -> Optional[Path]:
        """Download a file into the download directory unless it is already there."""
        filepath = self.download_dir / filename
        if filepath.exists():
            logger.debug(f"Skipping download: {filename} already exists.")
            return filepath

        try:
            self.download_dir.mkdir(parents=True, exist_ok=True)
            response = await self.context.request.get(url, timeout=config.PAGE_TIMEOUT * 1000)
            if not response.ok:
                logger.warning(f"Failed to download {filename}, status: {response.status}")
                return None

            filepath.write_bytes(await response.body())
            logger.info(f"🎧 Downloaded: {filename}")
            return filepath

        except Exception as e:
            logger.error(f"❌ Failed to download {filename}: {e}")
            return None

    async def _download_song_files(self, record: ExtractionRecord) -> None:
        if self.download_covers and record.cover_image_url:
            await self.download_file(record.cover_image_url, record.cover_filename)
        if self.download_audio and record.audio_url:
            await self.download_file(record.audio_url, record.filename)

    async def enrich_batch(self, records: List[ExtractionRecord]) -> List[ExtractionRecord]:
        """Enrich one page of stubs in parallel, keeping their order."""
        results = await asyncio.gather(*(self._enrich_song(record) for record in records))
        enriched = [record for record in results if record is not None]

        if self.download_covers or self.download_audio:
            for record in enriched:
                await self._download_song_files(record)

        return enriched

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    async def iter_song_batches(
        self,
        limit: int = config.DEFAULT_LIMIT,
        max_pages: int = config.DEFAULT_MAX_PAGES,
        start_url: str = config.SEARCH_URL,
    ) -> AsyncIterator[List[ExtractionRecord]]:
        """
        Yield the enriched songs of each results page.

        Stops when ``limit`` songs were emitted, after ``max_pages`` pages, or
        when there is no usable next page.
        """
        if not self.page:
            raise RuntimeError("Browser not initialized. Call initialize() first.")

        if not await self._load_search_page(start_url):
            return

        collected = 0
        page_number = 1

        while collected < limit and page_number <= max_pages:
            logger.info(f"🔎 Scraping page {page_number}...")

            await self._auto_scroll()
            if not await self._wait_for_results():
                break

            stubs = await self._scrape_summaries(limit - collected)
            logger.info(f"Found {len(stubs)} songs on page {page_number}")

            if stubs:
                batch = await self.enrich_batch(stubs)
                collected += len(batch)
                if batch:
                    yield batch

            if collected >= limit:
                break
            if page_number >= max_pages:
                logger.info(f"Reached the maximum of {max_pages} pages")
                break

            next_button = await self._find_next_button()
            if not next_button:
                logger.info(f"🚫 No more pages available. Stopping at page {page_number}.")
                break

            if self.cooldown_after_pages and page_number % self.cooldown_after_pages == 0:
                logger.info(f"⏸️ Cooldown for {self.cooldown_seconds} seconds to avoid rate limits...")
                await asyncio.sleep(self.cooldown_seconds)
            else:
                await self._random_delay(*self.batch_pause_range)

            if not await self._go_to_next_page(next_button):
                break

            page_number += 1

        logger.info(f"Collected {collected} songs from {page_number} pages")

    async def scrape_songs(
        self,
        limit: int = config.DEFAULT_LIMIT,
        max_pages: int = config.DEFAULT_MAX_PAGES,
    ) -> List[ExtractionRecord]:
        """Collect every batch of a run into one list."""
        songs = []
        async for batch in self.iter_song_batches(limit, max_pages):
            songs.extend(batch)
        return songs

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Scrape song metadata from Pixabay Music.')
    parser.add_argument('limit', type=int, nargs='?', default=config.DEFAULT_LIMIT,
                        help=f'Number of songs to collect (default: {config.DEFAULT_LIMIT})')
    parser.add_argument('--max-pages', type=int, default=config.DEFAULT_MAX_PAGES,
                        help=f'Maximum number of result pages (default: {config.DEFAULT_MAX_PAGES})')
    parser.add_argument('--output', '-o', type=Path, default=config.OUTPUT_JSON,
                        help=f'Output JSON file (default: {config.OUTPUT_JSON})')
    parser.add_argument('--headless', action=argparse.BooleanOptionalAction, default=config.HEADLESS,
                        help='Run the browser without a window')
    parser.add_argument('--add-to-db', action='store_true', help='Add each scraped batch to the database')
    parser.add_argument('--failed-log', type=Path, default=config.FAILED_SONGS_FILE,
                        help=f'Failure log for database inserts (default: {config.FAILED_SONGS_FILE})')
    parser.add_argument('--download-covers', action='store_true', help='Download cover images')
    parser.add_argument('--download-audio', action='store_true', help='Download audio files')
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> int:
    """Main function to run the scraper."""
    from db_manager import SongsDatabase, StoreUnavailableError
    from ingester import IngestReport, ingest_and_log, save_records

    args = parse_args(argv)

    db = None
    if args.add_to_db:
        db = SongsDatabase(config.DB_PATH)
        try:
            db.connect()
            db.create_tables()
        except StoreUnavailableError as e:
            logger.error(f"Database unavailable: {e}")
            return 1

    songs: List[ExtractionRecord] = []
    report = IngestReport()

    try:
        async with PixabayMusicScraper(
            headless=args.headless,
            download_covers=args.download_covers,
            download_audio=args.download_audio,
        ) as scraper:
            async for batch in scraper.iter_song_batches(args.limit, args.max_pages):
                songs.extend(batch)
                save_records(args.output, songs)
                if db:
                    report.merge(await ingest_and_log(db, batch, args.failed_log))
    except Exception as e:
        logger.error(f"Error: {str(e)}")
        return 1
    finally:
        if db:
            db.close()

    if not songs:
        logger.error("❌ No songs found! Check if the URL is correct or pagination is blocked.")
        return 0

    print(f"✅ Scraped {len(songs)} songs")
    print(f"📁 Results saved to {args.output}")
    if db:
        print(f"🗄️  {report.summary()}")

    return 0


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO if not config.DEBUG else logging.DEBUG,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    try:
        exit_code = asyncio.run(main())
        exit(exit_code)
    except KeyboardInterrupt:
        print("\n❌ Operation cancelled by user.")
        exit(1)
