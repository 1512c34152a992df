"""Stdio front server for toolrelay."""
