"""Ingestion saga: run state, activities and the LangGraph workflow."""
