"""Omnigen: scripted multi-scene video generation backend."""
