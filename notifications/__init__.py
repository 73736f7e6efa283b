"""Attendance alert dispatch: composing, routing and classifying push sends."""
