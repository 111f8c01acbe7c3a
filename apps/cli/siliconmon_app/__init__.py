"""siliconmon command-line application."""
