"""
Booru Harvester – Import tagged image-board posts into a Postgres database.

Supports:
  • Crawling every listing page of a tag with bounded concurrency
  • Crawling a single listing page
  • Content-addressed image downloads with retry and backoff
  • Resumable operation via URL and content-hash deduplication
"""
