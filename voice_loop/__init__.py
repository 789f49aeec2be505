"""Real-time voice turn-taking loop: capture, silence detection, streaming transcription, remote conversation and reply playback."""
