"""Backend for the interactive children's storybook: story sessions, text and illustration turns."""
