"""HTTP clients for external providers (PiAPI/Kling, Gemini, catbox.moe)."""
