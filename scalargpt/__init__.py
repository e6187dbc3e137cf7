# Tiny character level GPT on top of a scalar reverse-mode autodiff engine
