"""Shared configuration and observability for the pipeline."""
