"""Storyforge: prompt assembly and streaming generation for story writing."""
