"""Device sessions and conversation threads for short-range peer chat.

Discovers nearby devices, tracks which ones are connected, and keeps an
independent message thread per peer, with a simulated peer answering in
place of a real remote endpoint.
"""
