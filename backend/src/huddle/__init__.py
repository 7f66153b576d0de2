"""Huddle realtime runtime shared by the API nodes."""
