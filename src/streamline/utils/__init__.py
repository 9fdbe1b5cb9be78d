"""Utility modules for Streamline"""
