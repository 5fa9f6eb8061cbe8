from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, Tag

from portalbridge.logging import get_logger
from portalbridge.service.cache import SessionCache
from portalbridge.service.errors import PortalUnavailableError
from portalbridge.service.session import SessionManager
from portalbridge.storage.common import query_signature, user_handle

logger = get_logger(__name__)

STUDENT = "Student"
PARENT = "Parent/Guardian"


@dataclass
class DirectoryEntry:
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    grade_level: Optional[str] = None
    role: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def parse_address(text: str) -> Dict[str, str]:
    """Split ``"5511 Steele Court, New Albany, OH 43054-8225"`` into parts.

    Anything without at least street, city and state/zip is kept whole as the
    street.
    """

    if not text:
        return {}
    parts = [p.strip() for p in text.split(",")]
    if len(parts) < 3:
        return {"address": text.strip()}
    state_zip = parts[2].split()
    result = {"address": parts[0], "city": parts[1]}
    if state_zip:
        result["state"] = state_zip[0]
    postal = " ".join(state_zip[1:]).replace("-", "")
    if postal:
        result["postal_code"] = postal
    return result


def _text(node: Optional[Tag]) -> str:
    return node.get_text(strip=True) if node is not None else ""


def _labelled_link(container: Tag, label: str, scheme: str) -> Optional[str]:
    for label_node in container.select(".directory-Entry_FieldLabel"):
        if _text(label_node) != label or label_node.parent is None:
            continue
        value_cell = label_node.parent.find_next_sibling(class_="ae-grid__item--no-padding")
        if value_cell is None:
            continue
        link = value_cell.select_one(f'a[href^="{scheme}"]')
        if link is not None:
            return _text(link) or None
    return None


def parse_directory_page(page: str) -> List[DirectoryEntry]:
    """One student entry per directory card, then one per parent/guardian."""

    soup = BeautifulSoup(page or "", "html.parser")
    entries: List[DirectoryEntry] = []
    for card in soup.select(".directory-Entry"):
        student_name = _text(card.select_one(".directory-Entry_Title"))
        if not student_name:
            continue
        grade = _text(card.select_one(".directory-Entry_Tag")) or None
        email_link = card.select_one('.directory-Entry_Header a[href^="mailto:"]')
        address_node = next(
            (
                node
                for node in card.select(".directory-Entry_FieldTitle")
                if "directory-Entry_FieldTitle--blue" not in (node.get("class") or [])
            ),
            None,
        )
        address = parse_address(_text(address_node))
        entries.append(
            DirectoryEntry(
                name=student_name,
                email=_text(email_link) or None,
                grade_level=grade,
                role=STUDENT,
                **address,
            )
        )
        for parent_node in card.select(".directory-Entry_FieldTitle--blue"):
            parent_name = _text(parent_node)
            if not parent_name:
                continue
            container = parent_node.find_parent(class_="ae-grid") or card
            entries.append(
                DirectoryEntry(
                    name=parent_name,
                    email=_labelled_link(container, "Email", "mailto:"),
                    phone=_labelled_link(container, "Mobile", "tel:"),
                    role=PARENT,
                    **address,
                )
            )
    return entries


def directory_query_params(
    *,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    city: Optional[str] = None,
    postal_code: Optional[str] = None,
    grade_level: Optional[str] = None,
) -> List[tuple[str, str]]:
    return [
        ("directory_entry[first_name]", first_name or ""),
        ("directory_entry[last_name]", last_name or ""),
        ("directory_entry[city]", city or ""),
        ("directory_entry[location]", ""),
        ("directory_entry[postal_code]", postal_code or ""),
        ("directory_entry[grade_level]", grade_level or ""),
        ("commit", "Search"),
    ]


class DirectorySearch:
    NAMESPACE = "search_directory"

    def __init__(
        self,
        sessions: SessionManager,
        cache: SessionCache,
        *,
        directory_path: str = "/parent/directory/1",
        ttl_hours: Optional[float] = None,
    ) -> None:
        self.sessions = sessions
        self.cache = cache
        self.directory_path = directory_path
        self.ttl_hours = ttl_hours

    async def search(
        self,
        identity: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        city: Optional[str] = None,
        postal_code: Optional[str] = None,
        grade_level: Optional[str] = None,
        refresh: bool = False,
    ) -> List[DirectoryEntry]:
        handle = user_handle(identity)
        query = {
            "firstName": first_name,
            "lastName": last_name,
            "city": city,
            "postalCode": postal_code,
            "gradeLevel": grade_level,
        }
        signature = query_signature(query, self.NAMESPACE)
        if not refresh:
            cached = await self.cache.get(handle, signature)
            if cached is not None:
                info = await self.cache.info(handle, signature)
                logger.info(
                    "directory_cache_hit",
                    user_handle=handle,
                    results=len(cached),
                    age_minutes=info.age_minutes if info else None,
                    expires_in_minutes=info.expires_in_minutes if info else None,
                )
                return [DirectoryEntry(**entry) for entry in cached]

        response = await self.sessions.authenticated_request(
            identity,
            self.directory_path,
            params=directory_query_params(
                first_name=first_name,
                last_name=last_name,
                city=city,
                postal_code=postal_code,
                grade_level=grade_level,
            ),
        )
        if not response.is_success:
            raise PortalUnavailableError(
                f"Directory search failed with portal status {response.status_code}"
            )
        entries = parse_directory_page(response.text)
        await self.cache.set(
            handle, signature, [entry.to_dict() for entry in entries], self.ttl_hours
        )
        logger.info("directory_fetched", user_handle=handle, results=len(entries))
        return entries
