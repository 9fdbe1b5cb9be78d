"""Streamline command line interface"""
