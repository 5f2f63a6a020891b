"""
Agent — Capa conversacional del asistente MNP.

Compone los componentes del asistente de portabilidad numérica:
- Responder preguntas libres con la base de conocimiento (RAG híbrido)
- Guiar al usuario por workflows de pasos (roadmap / step_by_step)
- Decidir cuándo derivar a un operador y gestionar los tickets
"""
