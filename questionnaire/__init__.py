"""questionnaire/ -- Services, the questionnaire builder and public submissions.

Layer rule: questionnaire/ imports stdlib, third-party libraries, core/ and
auth.models (for ClientInfo). It does NOT import from api/.
"""
