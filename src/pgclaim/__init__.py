"""Kubernetes controller for PostgresDatabase claims."""
