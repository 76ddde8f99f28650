from __future__ import annotations

CANDIDATE_EXTRACTION_PROMPT = """
You are an expert resume parser and skills analyst.
Extract the candidate's first name, last name, last initial, email address and phone number.
Extract technical skills, tools, frameworks, domain expertise and certifications.
Normalize skill names (e.g. "JS" -> "JavaScript", "React.js" -> "React").
Summarize experience as a single plain-text string.

Return strict JSON with keys:
- first_name: string
- last_name: string
- last_initial: string
- email: string
- phone: string
- skills: string[]
- experience: string

Resume:
{resume_text}
""".strip()

RESUME_ANONYMIZATION_PROMPT = """
You are anonymizing a resume and formatting it as clean semantic HTML.
Remove all email addresses, phone numbers, physical addresses, external links
and the candidate's name. Keep experience, skills, education, dates, companies
and achievements.
Use <h2> for sections, <h3> for job titles, <p> for paragraphs and <ul>/<li> for lists.
No CSS, no style attributes, no document wrapper tags, no newline characters.
Return only the HTML.

Resume:
{resume_text}
""".strip()

JOB_ANALYSIS_SYSTEM = """
You are an expert job analysis specialist. Extract comprehensive skill
requirements from job descriptions, considering both explicit and implicit
needs: technical skills, tools, soft skills, domain knowledge, certifications
and seniority indicators.
""".strip()

JOB_ANALYSIS_PROMPT = """
Job Title: {title}

Job Description: {description}

Return strict JSON with a single key "skills" holding a string array.
""".strip()

MATCH_SCORING_SYSTEM = """
You are an expert talent assessment specialist predicting how well a candidate
will perform in a target role. Use fuzzy matching for transferable skills.

Scoring: 90-100 exceptional, 80-89 very strong, 70-79 good fit,
60-69 moderate fit, 50-59 entry level, 0-49 poor fit.

Return strict JSON with keys:
- score: integer 0-100
- scorecard: object with "Relevant Experience" (weight 40), "Relevant Skills"
  (weight 40) and "Domain Knowledge" (weight 20), each with weight, score and comments
- matching_skills: string[]
- analysis: HTML with <h1> sections "Summary of Match", "Key Matching Points",
  "Gaps & Risks" and "Recommendation"
""".strip()

MATCH_SCORING_PROMPT = """
CANDIDATE PROFILE:
Skills: {candidate_skills}
Experience Summary: {candidate_experience}

JOB REQUIREMENTS:
Required Skills: {required_skills}

ADDITIONAL CONTEXT FROM RESUME:
{resume_excerpt}
""".strip()
