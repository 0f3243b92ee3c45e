"""Database queries grouped by table"""
