"""Reader for published spreadsheet tables (CSV or HTML exports)."""
import csv
import io
import logging
import time
from typing import Dict, List, Tuple

import requests
from bs4 import BeautifulSoup

from processor.models import SourceTable

logger = logging.getLogger(__name__)


class SourceReader:
    """Fetches the raw rows of each configured source table."""

    MAX_RETRIES = 3
    BASE_DELAY = 1  # seconds

    def __init__(self, timeout: int = 30):
        """
        Initialize the source reader.

        Args:
            timeout: HTTP request timeout in seconds (default: 30)
        """
        self.timeout = timeout

    def read_sources(
        self,
        sources: Dict[str, str]
    ) -> Tuple[List[SourceTable], Dict[str, str]]:
        """
        Fetch every configured source.

        A source that cannot be fetched is logged and left out; the others
        are still returned.

        Args:
            sources: Mapping of department name to table URL

        Returns:
            Tuple of (SourceTable objects in configuration order,
            failed departments mapped to the fetch error)
        """
        tables = []
        failed = {}
        for department, url in sources.items():
            try:
                rows = self.fetch_table(url)
            except requests.RequestException as e:
                logger.error(f"Failed to fetch source '{department}': {e}")
                failed[department] = str(e)
                continue
            tables.append(SourceTable(department=department, source_id=department, rows=rows))

        logger.info(f"Read {len(tables)} of {len(sources)} sources")
        return tables, failed

    def fetch_table(self, url: str) -> List[List[str]]:
        """
        Fetch one table and split it into rows of cell strings.

        Args:
            url: CSV export or published HTML page of the table

        Returns:
            Rows, header row first
        """
        response = self._get_with_retry(url)
        content_type = response.headers.get('Content-Type', '')
        # Sheet exports are UTF-8 even when the charset is not declared
        if 'charset' not in content_type.lower():
            response.encoding = 'utf-8'

        if 'csv' in content_type or 'format=csv' in url or url.lower().endswith('.csv'):
            return self._parse_csv(response.text)
        return self._parse_html(response.text)

    def _get_with_retry(self, url: str) -> requests.Response:
        """
        GET a URL with exponential backoff.

        Raises:
            requests.RequestException: If all retry attempts fail
        """
        for attempt in range(self.MAX_RETRIES):
            try:
                logger.info(f"Fetching {url} (attempt {attempt + 1}/{self.MAX_RETRIES})")
                response = requests.get(url, timeout=self.timeout)
                response.raise_for_status()
                return response

            except requests.RequestException as e:
                if attempt < self.MAX_RETRIES - 1:
                    delay = self.BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        f"Request failed (attempt {attempt + 1}/{self.MAX_RETRIES}): {e}. "
                        f"Retrying in {delay} seconds..."
                    )
                    time.sleep(delay)
                else:
                    logger.error(
                        f"All {self.MAX_RETRIES} retry attempts failed. Last error: {e}"
                    )
                    raise

    def _parse_csv(self, text: str) -> List[List[str]]:
        return [row for row in csv.reader(io.StringIO(text))]

    def _parse_html(self, html_content: str) -> List[List[str]]:
        """
        Extract the first table of an HTML page.

        Rows without data cells (column letter headers of published sheets)
        are skipped.
        """
        soup = BeautifulSoup(html_content, 'html.parser')
        table = soup.find('table')
        if table is None:
            logger.warning("No table found in HTML source")
            return []

        rows = []
        for tr in table.find_all('tr'):
            cells = tr.find_all('td')
            if not cells:
                continue
            rows.append([cell.get_text(strip=True) for cell in cells])
        return rows
