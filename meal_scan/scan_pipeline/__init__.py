"""
Scan pipeline package:
- preprocess: crop a captured still to the on-screen scan frame, model input prep
- classifier: ONNX food classifier (+ backend selection)
- gpt_classifier: single-call GPT vision classifier
- nutrition: bundled per-portion nutrition catalog
- storage: meal document / meal photo stores
- persister: MealEntry construction, photo upload and meal write
- session: capture -> classify -> confidence gate -> confirm -> save state machine
"""
