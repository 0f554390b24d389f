"""
Analysis Pipeline

Three-stage provider pipeline:
1. Vision - scene and text extraction (google-vision)
2. Analysis - interpretation of the extracted scene (openai)
3. Synthesis - suggestions and summary (anthropic, optional)
"""
