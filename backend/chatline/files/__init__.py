"""File upload and storage module for Chatline.

This module handles attachment uploads and retrieval. Blob bytes are stored
locally under the upload directory and metadata is tracked in DuckDB.

Supported file types (10 MiB ceiling):
- Images: jpeg, png, gif, webp
- Videos: mp4, webm, ogg, quicktime
- Documents: pdf, Word, Excel, PowerPoint, plain text
- Audio: mpeg, wav, ogg, webm
"""
