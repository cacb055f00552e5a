"""Translate structured search filters into Evernote's search grammar."""

from typing import List

from evernote_mcp.core.errors import ValidationError
from evernote_mcp.models.schemas import SearchArguments


def build_query(filters: SearchArguments) -> str:
    """Join the present clauses in fixed order.

    Order: free text, notebook, tags (input order), created, updated.
    Paging fields are not part of the grammar.
    """
    terms: List[str] = []

    if filters.query:
        terms.append(filters.query)

    if filters.notebook_name:
        terms.append(f'notebook:"{filters.notebook_name}"')

    for tag in filters.tags or []:
        terms.append(f'tag:"{tag}"')

    if filters.created_after:
        terms.append(f"created:{filters.created_after}")

    if filters.updated_after:
        terms.append(f"updated:{filters.updated_after}")

    return " ".join(terms)


def require_criteria(filters: SearchArguments):
    """Reject searches with nothing to discriminate on."""
    if not filters.has_criteria():
        raise ValidationError(
            "At least one search criteria must be provided (query, notebookName, or tags)"
        )
