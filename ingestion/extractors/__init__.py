"""Streaming row sources (CSV, JSON, API, synthetic generator)."""

from ingestion.extractors.api_extractor import APIRowSource
from ingestion.extractors.csv_extractor import CSVRowSource
from ingestion.extractors.generator import GeneratorRowSource
from ingestion.extractors.json_extractor import JSONRowSource

__all__ = ["APIRowSource", "CSVRowSource", "GeneratorRowSource", "JSONRowSource"]
