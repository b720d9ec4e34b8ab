"""
Chat Threads

Reconstructs conversations from a chat log whose messages are split between
the user's and the bot's repositories. See thread.py for the grouping rules.
"""
