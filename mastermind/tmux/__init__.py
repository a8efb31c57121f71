"""tmux control and pane activity classification."""
