"""Attendance point lifecycle: recording, excusal, SRO and GBRO expiration."""
