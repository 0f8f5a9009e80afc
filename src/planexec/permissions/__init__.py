"""Tool-use permission decisions for Claude runs."""
