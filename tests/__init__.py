"""Test suite for the nested model updater."""
