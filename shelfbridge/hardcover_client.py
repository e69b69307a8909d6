"""
Hardcover API Client - Handles all interactions with Hardcover GraphQL API
"""

import json
import logging
import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests

from .errors import ExternalWriteError
from .progress import DEFAULT_REREAD_CONFIG
from .utils import calculate_progress_percentage, to_date

RATE_LIMIT_PER_MINUTE = 55
MAX_CONCURRENT_REQUESTS = 3

EDITION_FIELDS = """
    id
    isbn_10
    isbn_13
    asin
    pages
    audio_seconds
    physical_format
    reading_format { format }
    users_count
    release_year
"""

BOOK_CONTRIBUTIONS = """
    contributions(where: {contributable_type: {_eq: "Book"}}) {
        author {
            id
            name
        }
    }
"""


class RateLimiter:
    """Spaces requests evenly to respect a requests-per-minute budget"""

    def __init__(self, max_requests_per_minute: int = RATE_LIMIT_PER_MINUTE):
        self.max_requests = max_requests_per_minute
        self.delay = 60.0 / max_requests_per_minute
        self.last_request_time = 0.0
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def wait_if_needed(self) -> None:
        """Wait if needed to respect rate limit"""
        with self.lock:
            current_time = time.time()
            time_since_last = current_time - self.last_request_time

            if time_since_last < self.delay:
                sleep_time = self.delay - time_since_last
                self.logger.debug(f"Rate limiting: sleeping for {sleep_time:.3f}s")
                time.sleep(sleep_time)

            self.last_request_time = time.time()


class HardcoverClient:
    """Client for interacting with Hardcover GraphQL API"""

    def __init__(
        self,
        token: str,
        rate_limit: int = RATE_LIMIT_PER_MINUTE,
        max_concurrent: int = MAX_CONCURRENT_REQUESTS,
    ):
        self.token = token
        self.api_url = "https://api.hardcover.app/v1/graphql"
        self.logger = logging.getLogger(__name__)
        self.rate_limiter = RateLimiter(rate_limit)
        self.semaphore = threading.BoundedSemaphore(max_concurrent)

        # Setup session with authentication
        self.session = requests.Session()
        self.session.headers.update(
            {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        )

        self.logger.debug(f"HardcoverClient initialized ({rate_limit} req/min, {max_concurrent} concurrent)")

    def test_connection(self) -> bool:
        """Test connection to Hardcover API"""
        return self.get_current_user() is not None

    def get_current_user(self) -> Optional[Dict]:
        """Get current user information"""
        query = """
        query {
            me {
                id
                username
            }
        }
        """

        result = self._execute_query(query)
        if not result or not result.get("me"):
            return None
        me = result["me"]
        return me[0] if isinstance(me, list) and me else me

    def get_user_books(self) -> List[Dict]:
        """
        Get all books in the user's library, with every edition of each book
        """
        self.logger.info("Fetching user's book library from Hardcover...")

        query = f"""
        query getUserBooks($offset: Int = 0, $limit: Int = 100) {{
            me {{
                user_books(offset: $offset, limit: $limit) {{
                    id
                    status_id
                    edition_id
                    book {{
                        id
                        title
                        {BOOK_CONTRIBUTIONS}
                        editions {{
                            {EDITION_FIELDS}
                        }}
                    }}
                }}
            }}
        }}
        """

        all_books: List[Dict] = []
        offset = 0
        limit = 100

        while True:
            result = self._execute_query(query, {"offset": offset, "limit": limit})
            if not result or "me" not in result:
                self.logger.error("No user_books in GraphQL result")
                break

            me_data = result["me"]
            # Hasura returns `me` as a list
            if isinstance(me_data, list):
                books = me_data[0].get("user_books", []) if me_data else []
            elif isinstance(me_data, dict):
                books = me_data.get("user_books", [])
            else:
                self.logger.error(f"Unexpected me data structure: {type(me_data)}")
                break

            if not books:
                break
            all_books.extend(books)

            # If we got fewer books than the limit, we've reached the end
            if len(books) < limit:
                break
            offset += limit
            self.logger.debug(f"Fetched {len(all_books)} books so far...")

        self.logger.info(f"Retrieved {len(all_books)} books from Hardcover library")
        return all_books

    def get_book_current_progress(self, user_book_id: int) -> Optional[Dict]:
        """
        Get the latest read and the status of a user_book

        Returns:
            {"latest_read", "user_book", "has_progress"} or None if the query failed
        """
        query = """
        query getBookProgress($user_book_id: Int!) {
            user_book_reads(where: {user_book_id: {_eq: $user_book_id}}, order_by: {id: desc}, limit: 1) {
                id
                progress_pages
                progress_seconds
                user_book_id
                edition_id
                started_at
                finished_at
                edition {
                    id
                    pages
                    audio_seconds
                }
            }
            user_books(where: {id: {_eq: $user_book_id}}) {
                id
                status_id
            }
        }
        """

        result = self._execute_query(query, {"user_book_id": user_book_id})
        if result is None:
            return None

        reads = result.get("user_book_reads") or []
        user_books = result.get("user_books") or []
        return {
            "latest_read": reads[0] if reads else None,
            "user_book": user_books[0] if user_books else None,
            "has_progress": len(reads) > 0,
        }

    def search_books_by_isbn(self, isbn: str) -> List[Dict]:
        """Find editions with this ISBN-10 or ISBN-13, each with its parent book"""
        query = f"""
        query searchBooksByISBN($isbn: String!) {{
            editions(where: {{_or: [{{isbn_10: {{_eq: $isbn}}}}, {{isbn_13: {{_eq: $isbn}}}}]}}, limit: 10) {{
                {EDITION_FIELDS}
                book_id
                book {{
                    id
                    title
                    {BOOK_CONTRIBUTIONS}
                }}
            }}
        }}
        """

        result = self._execute_query(query, {"isbn": isbn})
        editions = (result or {}).get("editions") or []
        self.logger.debug(f"Found {len(editions)} editions for ISBN {isbn}")
        return editions

    def search_books_by_asin(self, asin: str) -> List[Dict]:
        """Find editions with this ASIN, each with its parent book"""
        query = f"""
        query searchBooksByASIN($asin: String!) {{
            editions(where: {{asin: {{_eq: $asin}}}}, limit: 10) {{
                {EDITION_FIELDS}
                book_id
                book {{
                    id
                    title
                    {BOOK_CONTRIBUTIONS}
                }}
            }}
        }}
        """

        result = self._execute_query(query, {"asin": asin})
        editions = (result or {}).get("editions") or []
        self.logger.debug(f"Found {len(editions)} editions for ASIN {asin}")
        return editions

    def search_books_by_title_author(self, title: str, author: Optional[str] = None, limit: int = 5) -> List[Dict]:
        """
        Full-text book search

        Searches "title author" first and falls back to the title alone when
        that finds nothing.
        """
        if not title:
            return []

        results: List[Dict] = []
        if author:
            results = self._search_books(f"{title.strip()} {author.strip()}", limit)
        if not results:
            results = self._search_books(title.strip(), limit)
        return results

    def _search_books(self, search_query: str, limit: int) -> List[Dict]:
        query = """
        query searchBooks($query: String!, $limit: Int!) {
            search(query: $query, query_type: "books", per_page: $limit, page: 1, sort: "activities_count:desc") {
                results
            }
        }
        """

        result = self._execute_query(query, {"query": search_query, "limit": min(limit, 10)})
        raw = ((result or {}).get("search") or {}).get("results")
        if not raw:
            return []

        # Results come back as a JSON string, a list, or a Typesense {hits: [{document}]} object
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                self.logger.error(f"Invalid search results for '{search_query}': {str(e)}")
                return []
        if isinstance(raw, dict):
            raw = [hit.get("document") for hit in raw.get("hits") or [] if hit.get("document")]
        if not isinstance(raw, list):
            self.logger.warning(f"Unexpected search results format for '{search_query}': {type(raw)}")
            return []

        self.logger.debug(f"Search for '{search_query}' returned {len(raw)} results")
        return raw

    def get_book_editions(self, book_id: int) -> List[Dict]:
        """All editions of a book with the fields edition selection needs"""
        query = f"""
        query getBookEditions($id: Int!) {{
            books(where: {{id: {{_eq: $id}}}}, limit: 1) {{
                id
                editions {{
                    {EDITION_FIELDS}
                }}
            }}
        }}
        """

        result = self._execute_query(query, {"id": int(book_id)})
        books = (result or {}).get("books") or []
        if not books:
            return []
        editions = books[0].get("editions") or []
        for edition in editions:
            edition.setdefault("book_id", books[0]["id"])
        return editions

    def add_book_to_library(self, book_id: int, status_id: int = 2, edition_id: Optional[int] = None) -> Dict:
        """
        Add a book to user's library

        Args:
            book_id: ID of the book to add
            status_id: Status (1=Want to Read, 2=Currently Reading, 3=Read, 4=Did Not Finish)
            edition_id: Edition to link the user_book to

        Returns:
            The created user_book record ({"id": ...})
        """
        self.logger.info(f"Adding book {book_id} to library with status {status_id}")

        mutation = """
        mutation addBookToLibrary($book_id: Int!, $status_id: Int!, $edition_id: Int) {
            insert_user_book(object: {book_id: $book_id, status_id: $status_id, edition_id: $edition_id}) {
                id
                error
            }
        }
        """

        result = self._execute_mutation(
            "insert_user_book", mutation, {"book_id": book_id, "status_id": status_id, "edition_id": edition_id}
        )
        if not result.get("id"):
            raise ExternalWriteError(f"Failed to add book {book_id} to library: {result.get('error')}")
        return {"id": result["id"], "status_id": status_id, "edition_id": edition_id}

    @staticmethod
    def should_create_new_read(
        progress_info: Optional[Dict], progress_percent: float, use_seconds: bool, reread_config: Optional[Dict] = None
    ) -> Tuple[bool, str]:
        """
        Decide between updating the latest read and starting a new one

        A new read starts when the latest read is finished, or when progress
        drops from the high-progress range into the re-read range.
        """
        if not progress_info or not progress_info.get("latest_read"):
            return False, "no existing read"

        settings = dict(DEFAULT_REREAD_CONFIG)
        settings.update(reread_config or {})
        latest_read = progress_info["latest_read"]

        if latest_read.get("finished_at"):
            return True, "previous read is finished"

        edition = latest_read.get("edition") or {}
        if use_seconds:
            done, total = latest_read.get("progress_seconds"), edition.get("audio_seconds")
        else:
            done, total = latest_read.get("progress_pages"), edition.get("pages")
        if not done or not total:
            return False, "previous progress unknown"

        previous_percent = calculate_progress_percentage(done, total)
        if previous_percent >= settings["high_progress_threshold"] and progress_percent <= settings["reread_threshold"]:
            return True, f"re-read detected ({previous_percent:.1f}% -> {progress_percent:.1f}%)"
        return False, "continuing current read"

    def update_reading_progress(
        self,
        user_book_id: int,
        current_value: int,
        progress_percent: float,
        edition_id: int,
        use_seconds: bool = False,
        started_at: Optional[str] = None,
        reread_config: Optional[Dict] = None,
    ) -> Dict:
        """
        Write progress to the user's latest read, or start a new read

        Args:
            user_book_id: ID of the user_book record in Hardcover
            current_value: Position in seconds (audiobooks) or pages
            progress_percent: Progress as percentage (0-100)
            edition_id: ID of the specific edition being read
            use_seconds: Write progress_seconds instead of progress_pages
            started_at: ISO timestamp the reading started
            reread_config: Re-read detection thresholds

        Returns:
            The written user_book_read plus ``created_new`` and ``previous_read``

        Raises:
            ExternalWriteError: If Hardcover rejects the write
        """
        self.logger.debug(
            f"Updating progress for user_book_id {user_book_id}: "
            f"{current_value} {'seconds' if use_seconds else 'pages'}, {progress_percent:.1f}%"
        )

        progress_info = self.get_book_current_progress(user_book_id)
        create_new, reason = self.should_create_new_read(progress_info, progress_percent, use_seconds, reread_config)
        latest_read = (progress_info or {}).get("latest_read")

        if latest_read and not create_new:
            record = self.update_read(latest_read["id"], current_value, edition_id, use_seconds, to_date(started_at))
        else:
            if create_new:
                self.logger.info(f"Creating new reading session: {reason}")
            start_date = to_date(started_at) or datetime.now().strftime("%Y-%m-%d")
            record = self.insert_user_book_read(user_book_id, current_value, edition_id, start_date, use_seconds)

        record["created_new"] = latest_read is None or create_new
        record["previous_read"] = latest_read
        return record

    def update_read(
        self,
        read_id: int,
        current_value: Optional[int],
        edition_id: int,
        use_seconds: bool = False,
        started_at: Optional[str] = None,
        finished_at: Optional[str] = None,
    ) -> Dict:
        """Update a user_book_read; omitted dates are left untouched"""
        progress_field = "progress_seconds" if use_seconds else "progress_pages"
        fields = {progress_field: current_value, "edition_id": edition_id}
        if started_at:
            fields["started_at"] = started_at
        if finished_at:
            fields["finished_at"] = finished_at

        mutation = """
        mutation UpdateBookProgress($id: Int!, $object: DatesReadInput!) {
            update_user_book_read(id: $id, object: $object) {
                error
                user_book_read {
                    id
                    progress_pages
                    progress_seconds
                    edition_id
                    started_at
                    finished_at
                }
            }
        }
        """

        result = self._execute_mutation("update_user_book_read", mutation, {"id": read_id, "object": fields})
        if not result.get("user_book_read"):
            raise ExternalWriteError(f"Failed to update read {read_id}: {result.get('error')}")
        self.logger.debug(f"Updated read {read_id}: {fields}")
        return result["user_book_read"]

    def insert_user_book_read(
        self,
        user_book_id: int,
        current_value: Optional[int],
        edition_id: int,
        started_at: Optional[str],
        use_seconds: bool = False,
    ) -> Dict:
        progress_field = "progress_seconds" if use_seconds else "progress_pages"
        mutation = """
        mutation InsertUserBookRead($id: Int!, $read: DatesReadInput!) {
            insert_user_book_read(user_book_id: $id, user_book_read: $read) {
                error
                user_book_read {
                    id
                    started_at
                    finished_at
                    edition_id
                    progress_pages
                    progress_seconds
                }
            }
        }
        """

        read = {progress_field: current_value, "edition_id": edition_id, "started_at": started_at}
        result = self._execute_mutation("insert_user_book_read", mutation, {"id": user_book_id, "read": read})
        if not result.get("user_book_read"):
            raise ExternalWriteError(f"Failed to create read for user_book {user_book_id}: {result.get('error')}")
        self.logger.debug(f"Created read {result['user_book_read']['id']} for user_book {user_book_id}")
        return result["user_book_read"]

    def mark_book_completed(
        self,
        user_book_id: int,
        edition_id: int,
        total: Optional[int],
        use_seconds: bool = False,
        finished_at: Optional[str] = None,
        started_at: Optional[str] = None,
    ) -> bool:
        """
        Mark a book as completed (Read status) in Hardcover

        Sets the latest read to the full extent with a finish date, creating
        the read first if there is none, then moves the book to Read.

        Raises:
            ExternalWriteError: If Hardcover rejects the write
        """
        self.logger.debug(f"Marking book as completed: user_book_id {user_book_id}")

        progress_info = self.get_book_current_progress(user_book_id)
        latest_read = (progress_info or {}).get("latest_read")
        if latest_read:
            read_id = latest_read["id"]
        else:
            start_date = to_date(started_at) or datetime.now().strftime("%Y-%m-%d")
            read_id = self.insert_user_book_read(user_book_id, total, edition_id, start_date, use_seconds)["id"]

        finish_date = to_date(finished_at) or datetime.now().strftime("%Y-%m-%d")
        self.update_read(read_id, total, edition_id, use_seconds, to_date(started_at), finish_date)
        self.update_book_status(user_book_id, 3)
        self.logger.info(f"Marked book as completed: user_book_id {user_book_id}")
        return True

    def update_book_status(self, user_book_id: int, status_id: int) -> bool:
        """
        Update the status of a book in Hardcover

        Args:
            user_book_id: ID of the user_book record in Hardcover
            status_id: Status (1=Want to Read, 2=Currently Reading, 3=Read, 4=Did Not Finish)

        Raises:
            ExternalWriteError: If Hardcover rejects the write
        """
        self.logger.debug(f"Updating book status: user_book_id {user_book_id} to status {status_id}")

        mutation = """
        mutation updateBookStatus($id: Int!, $statusId: Int!) {
            update_user_book(id: $id, object: {status_id: $statusId}) {
                error
                user_book {
                    id
                    status_id
                }
            }
        }
        """

        result = self._execute_mutation("update_user_book", mutation, {"id": user_book_id, "statusId": status_id})
        if not result.get("user_book"):
            raise ExternalWriteError(f"Failed to update status of user_book {user_book_id}: {result.get('error')}")
        self.logger.info(f"Updated book status: user_book_id {user_book_id} to status {status_id}")
        return True

    def _execute_mutation(self, name: str, mutation: str, variables: Dict) -> Dict:
        """Run a mutation and return its payload, raising ExternalWriteError on failure"""
        result = self._execute_query(mutation, variables)
        if not result or not result.get(name):
            raise ExternalWriteError(f"{name} failed: no response from Hardcover")
        payload = result[name]
        if payload.get("error"):
            raise ExternalWriteError(f"{name} failed: {payload['error']}")
        return payload

    def _execute_query(self, query: str, variables: Optional[Dict] = None) -> Optional[Dict]:
        """Execute GraphQL query with rate limiting and the in-flight cap"""
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        with self.semaphore:
            self.rate_limiter.wait_if_needed()
            try:
                response = self.session.post(self.api_url, json=payload, timeout=30)
                response.raise_for_status()
                data = response.json()
            except requests.exceptions.RequestException as e:
                self.logger.error(f"Request failed: {str(e)}")
                return None
            except json.JSONDecodeError as e:
                self.logger.error(f"Invalid JSON response: {str(e)}")
                return None

        # Check for GraphQL errors
        if "errors" in data:
            self.logger.error(f"GraphQL errors: {data['errors']}")
            return None

        return data.get("data")
