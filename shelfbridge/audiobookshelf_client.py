"""
Audiobookshelf API Client - Handles all interactions with Audiobookshelf server
"""

import concurrent.futures
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import requests

from .models import LibraryItem

MAX_PARALLEL_WORKERS = 8


class AudiobookshelfClient:
    """Client for interacting with Audiobookshelf API"""

    def __init__(
        self, base_url: str, token: str, max_workers: int = MAX_PARALLEL_WORKERS, timezone: Optional[str] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.max_workers = max_workers
        self.timezone = timezone
        self.logger = logging.getLogger(__name__)

        # Setup session with authentication
        self.session = requests.Session()
        self.session.headers.update(
            {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        )

        self.logger.debug(f"AudiobookshelfClient initialized for {self.base_url}")

    def test_connection(self) -> bool:
        """Test connection to Audiobookshelf server"""
        return self._get_current_user() is not None

    def get_reading_progress(self) -> List[LibraryItem]:
        """
        Get every book the user has a progress record for

        Item details are fetched in parallel and merged with the user's
        progress (percentage, position, finished flag and timestamps).

        Raises:
            ConnectionError: If the current user cannot be loaded
        """
        self.logger.info("Fetching reading progress from Audiobookshelf...")

        user_data = self._get_current_user()
        if not user_data:
            raise ConnectionError("Could not get current user data from Audiobookshelf")

        # Podcast episodes have their own progress records
        progress_records = [
            record
            for record in user_data.get("mediaProgress") or []
            if record.get("libraryItemId") and not record.get("episodeId")
        ]

        def safe_get_details(record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            try:
                return self._get_library_item_details(record["libraryItemId"], record)
            except Exception as e:
                self.logger.error(f"Error fetching details for {record['libraryItemId']}: {str(e)}")
                return None

        items: List[LibraryItem] = []
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(safe_get_details, record) for record in progress_records]
            for future in concurrent.futures.as_completed(futures):
                detailed_item = future.result()
                if detailed_item:
                    items.append(LibraryItem.from_abs(detailed_item, self.timezone))

        self.logger.info(f"Found {len(items)} books with progress in Audiobookshelf")
        return items

    def _get_current_user(self) -> Optional[Dict[str, Any]]:
        """Get current user information, including mediaProgress"""
        response = self._make_request("GET", "/api/me")
        if response:
            try:
                user_data: Dict[str, Any] = response.json()
                return user_data
            except requests.exceptions.JSONDecodeError as e:
                self.logger.error(f"Invalid JSON from /api/me: {str(e)}")
        return None

    def _get_library_item_details(self, item_id: str, progress_data: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Get detailed information for a library item merged with the user's progress"""
        response = self._make_request("GET", f"/api/items/{item_id}", params={"expanded": 1})
        if not response:
            return None

        try:
            item_data: Dict[str, Any] = response.json()
        except requests.exceptions.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON for item {item_id}: {str(e)}")
            return None

        if progress_data is None:
            progress_data = self._get_user_progress(item_id)

        if progress_data:
            progress = progress_data.get("progress")
            item_data["progress_percentage"] = progress * 100 if isinstance(progress, (int, float)) else None
            item_data["current_time"] = progress_data.get("currentTime")
            item_data["is_finished"] = progress_data.get("isFinished", False)
            item_data["started_at"] = progress_data.get("startedAt")
            item_data["finished_at"] = progress_data.get("finishedAt")
            item_data["last_update"] = progress_data.get("lastUpdate")

        return item_data

    def _get_user_progress(self, item_id: str) -> Optional[Dict[str, Any]]:
        """Get user's progress for a specific item"""
        # 404 means no progress, which is normal
        response = self._make_request("GET", f"/api/me/progress/{item_id}", suppress_errors=[404])
        if response:
            try:
                progress_data: Dict[str, Any] = response.json()
                return progress_data
            except requests.exceptions.JSONDecodeError:
                return None
        return None

    def _make_request(
        self,
        method: str,
        endpoint: str,
        suppress_errors: Optional[List[int]] = None,
        **kwargs,
    ) -> Optional[requests.Response]:
        """Make HTTP request to Audiobookshelf API"""
        url = urljoin(self.base_url, endpoint)
        kwargs.setdefault("timeout", 30)

        try:
            response = self.session.request(method, url, **kwargs)
            self.logger.debug(f"{method} {url} -> {response.status_code}")
            response.raise_for_status()
            return response

        except requests.exceptions.RequestException as e:
            if not (
                suppress_errors
                and e.response is not None
                and e.response.status_code in suppress_errors
            ):
                self.logger.error(f"Request failed: {method} {url} - {str(e)}")
            return None

    def get_libraries(self) -> List[Dict[str, Any]]:
        """Get all libraries"""
        response = self._make_request("GET", "/api/libraries")
        if response:
            try:
                libraries = response.json().get("libraries", [])
                if isinstance(libraries, list):
                    return libraries
            except requests.exceptions.JSONDecodeError as e:
                self.logger.error(f"Invalid JSON from /api/libraries: {str(e)}")
        return []
