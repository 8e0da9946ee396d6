"""Relevance-ranked search across companies, contacts and deals.

Provides the ranking strategy predicate (token-ranked vs. fuzzy similarity),
SearchQueryBuilder for the per-kind UNION ALL statement, SearchRepository for
execution and bulk re-fetch, and SearchEngine for validation, merging and
pagination.
"""
