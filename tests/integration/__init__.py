"""
End-to-end pipeline tests.

These run the whole app (registry, scanners, sync coordinator, status and
delivery endpoints) against a temporary fragment store with fake providers;
no credentials or network access needed.

Usage:
    pytest tests/integration/ -v -s
"""
